"""Which automations to re-run when a related object changes.

A change to a GitRepository re-runs the automations that name it as their
source; a change to any ImagePolicy re-runs every automation in its namespace,
since any of them may refer to the policy from a setter marker.
"""

from __future__ import annotations

from typing import List

from .interfaces import ObjectStore
from .models import (
    GIT_REPOSITORY_KIND,
    GitRepository,
    ImagePolicy,
    ImageUpdateAutomation,
    NamespacedName,
)
from .observability import log_error


SOURCE_INDEX_KEY = ".metadata.source"


def source_index_values(auto: ImageUpdateAutomation) -> List[str]:
    """Index values for looking automations up by source name."""
    source_ref = auto.spec.source_ref
    if source_ref.kind != GIT_REPOSITORY_KIND:
        return []
    return [source_ref.name]


def automations_for_git_repository(store: ObjectStore, repository: GitRepository) -> List[NamespacedName]:
    namespace = repository.metadata.namespace
    try:
        autos = store.list_automations(namespace, source_name=repository.metadata.name)
    except Exception as e:
        log_error("failed to list ImageUpdateAutomations for GitRepository",
                  gitrepository=str(repository.key), error=str(e))
        return []
    return [auto.key for auto in autos]


def automations_for_image_policy(store: ObjectStore, policy: ImagePolicy) -> List[NamespacedName]:
    namespace = policy.metadata.namespace
    try:
        autos = store.list_automations(namespace)
    except Exception as e:
        log_error("failed to list ImageUpdateAutomations for ImagePolicy",
                  imagepolicy=f"{namespace}/{policy.metadata.name}", error=str(e))
        return []
    return [auto.key for auto in autos]
