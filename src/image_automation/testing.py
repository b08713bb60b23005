"""In-memory collaborators for exercising the reconciler without a cluster."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import ObjectNotFound
from .interfaces import AutomationObserver
from .models import (
    Condition,
    GitRepository,
    ImagePolicy,
    ImageUpdateAutomation,
    ImageUpdateAutomationStatus,
    NamespacedName,
)
from .watches import source_index_values


class InMemoryStore:
    """Dict-backed object store.

    Objects are copied on the way in and on the way out, so callers never
    share state with the store.
    """

    def __init__(self) -> None:
        self.automations: Dict[NamespacedName, ImageUpdateAutomation] = {}
        self.repositories: Dict[NamespacedName, GitRepository] = {}
        self.policies: Dict[NamespacedName, ImagePolicy] = {}
        self.status_patches: List[Tuple[NamespacedName, ImageUpdateAutomationStatus]] = []
        self.fail_patch: Optional[Exception] = None

    def add(self, obj) -> None:
        key = NamespacedName(obj.metadata.namespace, obj.metadata.name)
        copy = obj.model_copy(deep=True)
        if isinstance(obj, ImageUpdateAutomation):
            self.automations[key] = copy
        elif isinstance(obj, GitRepository):
            self.repositories[key] = copy
        elif isinstance(obj, ImagePolicy):
            self.policies[key] = copy
        else:
            raise TypeError(f"unsupported object type {type(obj).__name__}")

    def get_automation(self, key: NamespacedName) -> ImageUpdateAutomation:
        try:
            return self.automations[key].model_copy(deep=True)
        except KeyError:
            raise ObjectNotFound("ImageUpdateAutomation", key.namespace, key.name)

    def get_git_repository(self, key: NamespacedName) -> GitRepository:
        try:
            return self.repositories[key].model_copy(deep=True)
        except KeyError:
            raise ObjectNotFound("GitRepository", key.namespace, key.name)

    def list_image_policies(self, namespace: str) -> List[ImagePolicy]:
        return [
            policy.model_copy(deep=True)
            for key, policy in sorted(self.policies.items(), key=lambda kv: kv[0].name)
            if key.namespace == namespace
        ]

    def list_automations(
        self, namespace: str, *, source_name: Optional[str] = None
    ) -> List[ImageUpdateAutomation]:
        found = []
        for key, auto in sorted(self.automations.items(), key=lambda kv: kv[0].name):
            if key.namespace != namespace:
                continue
            if source_name is not None and source_name not in source_index_values(auto):
                continue
            found.append(auto.model_copy(deep=True))
        return found

    def patch_status(
        self, current: ImageUpdateAutomation, status: ImageUpdateAutomationStatus
    ) -> None:
        if self.fail_patch is not None:
            raise self.fail_patch
        key = current.key
        if key not in self.automations:
            raise ObjectNotFound("ImageUpdateAutomation", key.namespace, key.name)
        self.automations[key].status = status.model_copy(deep=True)
        self.status_patches.append((key, status.model_copy(deep=True)))


class InMemorySecrets:
    def __init__(self, secrets: Optional[Dict[NamespacedName, Dict[str, bytes]]] = None) -> None:
        self.secrets: Dict[NamespacedName, Dict[str, bytes]] = dict(secrets or {})

    def add(self, namespace: str, name: str, data: Dict[str, bytes]) -> None:
        self.secrets[NamespacedName(namespace, name)] = dict(data)

    def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]:
        try:
            return dict(self.secrets[NamespacedName(namespace, name)])
        except KeyError:
            raise ObjectNotFound("Secret", namespace, name)


@dataclass
class RecordingObserver(AutomationObserver):
    events: List[Tuple[str, str]] = field(default_factory=list)
    runs: int = 0
    suspensions: List[bool] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)
    commits: List[Tuple[str, str]] = field(default_factory=list)
    durations: List[float] = field(default_factory=list)

    def event(self, auto: ImageUpdateAutomation, severity: str, message: str) -> None:
        self.events.append((severity, message))

    def run_started(self, auto: ImageUpdateAutomation) -> None:
        self.runs += 1

    def suspension(self, auto: ImageUpdateAutomation, suspended: bool) -> None:
        self.suspensions.append(suspended)

    def readiness(self, auto: ImageUpdateAutomation, condition: Condition) -> None:
        self.conditions.append(condition.model_copy(deep=True))

    def committed(self, auto: ImageUpdateAutomation, revision: str, branch: str) -> None:
        self.commits.append((revision, branch))

    def reconcile_duration(self, auto: ImageUpdateAutomation, seconds: float) -> None:
        self.durations.append(seconds)
