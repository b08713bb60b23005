"""Collaborators the reconciler depends on but does not implement.

``ObjectStore`` and ``SecretStore`` raise ``errors.ObjectNotFound`` for
missing objects. ``AutomationObserver`` is a no-op base class; subclass it to
forward events and metrics somewhere.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .models import (
    Condition,
    GitRepository,
    ImagePolicy,
    ImageUpdateAutomation,
    ImageUpdateAutomationStatus,
    NamespacedName,
    UpdateResult,
)


EVENT_SEVERITY_INFO = "info"
EVENT_SEVERITY_ERROR = "error"


class ObjectStore(Protocol):
    def get_automation(self, key: NamespacedName) -> ImageUpdateAutomation: ...

    def get_git_repository(self, key: NamespacedName) -> GitRepository: ...

    def list_image_policies(self, namespace: str) -> List[ImagePolicy]: ...

    def list_automations(
        self, namespace: str, *, source_name: Optional[str] = None
    ) -> List[ImageUpdateAutomation]:
        """List automations, narrowed by the source-name index when given."""
        ...

    def patch_status(
        self, current: ImageUpdateAutomation, status: ImageUpdateAutomationStatus
    ) -> None:
        """Replace the status of ``current`` (as fetched just before) with ``status``."""
        ...


class SecretStore(Protocol):
    def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]: ...


class Mutator(Protocol):
    def mutate(self, root: Path, policies: List[ImagePolicy]) -> UpdateResult:
        """Apply the policies as setters to files under ``root``."""
        ...


class AutomationObserver:
    """Fire-and-forget hooks called at fixed points of a run."""

    def event(self, auto: ImageUpdateAutomation, severity: str, message: str) -> None:
        pass

    def run_started(self, auto: ImageUpdateAutomation) -> None:
        pass

    def suspension(self, auto: ImageUpdateAutomation, suspended: bool) -> None:
        pass

    def readiness(self, auto: ImageUpdateAutomation, condition: Condition) -> None:
        pass

    def committed(self, auto: ImageUpdateAutomation, revision: str, branch: str) -> None:
        pass

    def reconcile_duration(self, auto: ImageUpdateAutomation, seconds: float) -> None:
        pass
