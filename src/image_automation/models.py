"""API objects read and written by the automation controller.

Models accept both snake_case field names and the camelCase keys used in
Kubernetes manifests (``sourceRef``, ``messageTemplate`` ...), so objects can
be built straight from parsed YAML.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


GIT_REPOSITORY_KIND = "GitRepository"
UPDATE_STRATEGY_SETTERS = "Setters"

GITPYTHON_IMPLEMENTATION = "gitpython"
GIT_CLI_IMPLEMENTATION = "git-cli"

RECONCILE_REQUEST_ANNOTATION = "reconcile.fluxcd.io/requestedAt"

READY_CONDITION = "Ready"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

# Readiness reasons
GIT_NOT_AVAILABLE_REASON = "GitRepositoryNotAvailable"
NO_STRATEGY_REASON = "MissingUpdateStrategy"
RECONCILIATION_FAILED_REASON = "ReconciliationFailed"
RECONCILIATION_SUCCEEDED_REASON = "ReconciliationSucceeded"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@dataclass(frozen=True)
class NamespacedName:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class ObjectMeta(_Model):
    name: str
    namespace: str = "default"
    generation: int = 1
    annotations: Dict[str, str] = Field(default_factory=dict)
    deletion_timestamp: Optional[datetime] = None


class LocalObjectReference(_Model):
    name: str


class CrossNamespaceSourceReference(_Model):
    kind: str = GIT_REPOSITORY_KIND
    name: str


# ---------------------------------------------------------------------------
# Source objects
# ---------------------------------------------------------------------------


class GitRepositoryRef(_Model):
    branch: str = ""
    tag: str = ""
    commit: str = ""


class GitRepositorySpec(_Model):
    url: str
    reference: Optional[GitRepositoryRef] = Field(default=None, alias="ref")
    secret_ref: Optional[LocalObjectReference] = None
    git_implementation: str = GITPYTHON_IMPLEMENTATION


class GitRepository(_Model):
    metadata: ObjectMeta
    spec: GitRepositorySpec

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(self.metadata.namespace, self.metadata.name)


class ImagePolicyStatus(_Model):
    latest_image: str = ""


class ImagePolicy(_Model):
    metadata: ObjectMeta
    status: ImagePolicyStatus = Field(default_factory=ImagePolicyStatus)


# ---------------------------------------------------------------------------
# ImageUpdateAutomation
# ---------------------------------------------------------------------------


class GitCheckoutSpec(_Model):
    reference: GitRepositoryRef = Field(alias="ref")


class PushSpec(_Model):
    branch: str


class CommitUser(_Model):
    name: str = ""
    email: str = ""


class SigningKey(_Model):
    secret_ref: LocalObjectReference


class CommitSpec(_Model):
    author: CommitUser = Field(default_factory=CommitUser)
    message_template: str = ""
    signing_key: Optional[SigningKey] = None


class GitSpec(_Model):
    checkout: Optional[GitCheckoutSpec] = None
    push: Optional[PushSpec] = None
    commit: CommitSpec = Field(default_factory=CommitSpec)


class UpdateStrategy(_Model):
    strategy: str = UPDATE_STRATEGY_SETTERS
    path: str = ""


class ImageUpdateAutomationSpec(_Model):
    source_ref: CrossNamespaceSourceReference
    git: Optional[GitSpec] = None
    update: Optional[UpdateStrategy] = None
    interval: float = Field(default=60.0, description="Seconds between runs")
    suspend: bool = False


class Condition(_Model):
    type: str
    status: Literal["True", "False", "Unknown"] = CONDITION_UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None
    observed_generation: int = 0


class ImageUpdateAutomationStatus(_Model):
    last_automation_run_time: Optional[datetime] = None
    last_push_commit: str = ""
    last_push_time: Optional[datetime] = None
    last_handled_reconcile_at: str = ""
    conditions: List[Condition] = Field(default_factory=list)

    def find_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


class ImageUpdateAutomation(_Model):
    metadata: ObjectMeta
    spec: ImageUpdateAutomationSpec
    status: ImageUpdateAutomationStatus = Field(default_factory=ImageUpdateAutomationStatus)

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(self.metadata.namespace, self.metadata.name)


def set_readiness(
    auto: ImageUpdateAutomation,
    status: str,
    reason: str,
    message: str,
    now: datetime,
) -> Condition:
    """Set the Ready condition on ``auto``.

    The transition time only moves when the condition status changes.
    """
    existing = auto.status.find_condition(READY_CONDITION)
    if existing is None:
        existing = Condition(type=READY_CONDITION, last_transition_time=now)
        auto.status.conditions.append(existing)
    elif existing.status != status:
        existing.last_transition_time = now
    existing.status = status  # type: ignore[assignment]
    existing.reason = reason
    existing.message = message
    existing.observed_generation = auto.metadata.generation
    return existing


def readiness(auto: ImageUpdateAutomation) -> Condition:
    """Return the Ready condition, or an Unknown one if none was recorded yet."""
    condition = auto.status.find_condition(READY_CONDITION)
    if condition is None:
        return Condition(type=READY_CONDITION, status=CONDITION_UNKNOWN)
    return condition


# ---------------------------------------------------------------------------
# Mutation result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ObjectIdentifier:
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass
class FileResult:
    objects: Dict[ObjectIdentifier, List[str]]


@dataclass
class UpdateResult:
    """What the setters run changed, keyed by file path relative to the root."""

    files: Dict[str, FileResult]

    def objects(self) -> Dict[ObjectIdentifier, List[str]]:
        merged: Dict[ObjectIdentifier, List[str]] = {}
        for file_result in self.files.values():
            for obj, images in file_result.objects.items():
                merged.setdefault(obj, []).extend(images)
        return merged

    def images(self) -> List[str]:
        seen: List[str] = []
        for images in self.objects().values():
            for image in images:
                if image not in seen:
                    seen.append(image)
        return seen

    def template_view(self) -> dict:
        """Shape exposed to commit message templates as ``Updated``."""
        return {
            "Files": {
                path: {"Objects": {str(obj): images for obj, images in result.objects.items()}}
                for path, result in self.files.items()
            },
            "Objects": {str(obj): images for obj, images in self.objects().items()},
            "Images": self.images(),
        }
