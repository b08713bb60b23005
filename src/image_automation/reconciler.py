"""Reconciliation of ImageUpdateAutomation objects.

One call to ``ImageUpdateAutomationReconciler.reconcile`` is one automation
run: clone the source repository, apply image policies to the manifests,
commit, push, and record the outcome in the object's status. Runs for
different objects may happen concurrently; runs for the same object are
serialized by the caller. Nothing is shared between runs except the status
written back through the object store.
"""

from __future__ import annotations

import shutil
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from git import Actor

from .access import RepoAccess, resolve_repo_access
from .config import ControllerConfig
from .errors import (
    ObjectNotFound,
    PushBranchUnresolvedError,
    SpecValidationError,
    UnsupportedSourceKindError,
)
from .git_backends import FetchResult, get_backend
from .interfaces import (
    EVENT_SEVERITY_ERROR,
    EVENT_SEVERITY_INFO,
    AutomationObserver,
    Mutator,
    ObjectStore,
    SecretStore,
)
from .message import render_commit_message
from .models import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    GIT_NOT_AVAILABLE_REASON,
    GIT_REPOSITORY_KIND,
    NO_STRATEGY_REASON,
    RECONCILE_REQUEST_ANNOTATION,
    RECONCILIATION_FAILED_REASON,
    RECONCILIATION_SUCCEEDED_REASON,
    UPDATE_STRATEGY_SETTERS,
    GitRepositoryRef,
    ImageUpdateAutomation,
    ImageUpdateAutomationStatus,
    NamespacedName,
    readiness,
    set_readiness,
)
from .observability import log_debug, log_error, log_info, log_warning, timeit
from .paths import secure_join
from .signing import load_signing_identity


@dataclass
class ReconcileResult:
    """What the caller should do next.

    ``requeue`` asks for an immediate retry (with the caller's backoff);
    ``requeue_after`` schedules the next run; neither means wait for an event.
    """

    requeue: bool = False
    requeue_after: Optional[float] = None
    error: Optional[Exception] = None


@dataclass
class AutomationRun:
    key: NamespacedName
    push_branch: str
    checkout_ref: Optional[GitRepositoryRef]
    implementation: str
    root: Path
    access: Optional[RepoAccess] = None
    status_message: str = ""

    @property
    def workdir(self) -> Path:
        return self.root / "repo"

    @property
    def auth_dir(self) -> Path:
        return self.root / "auth"

    @property
    def gnupg_home(self) -> Path:
        return self.root / "gnupg"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ImageUpdateAutomationReconciler:
    def __init__(
        self,
        store: ObjectStore,
        secrets: SecretStore,
        mutator: Mutator,
        *,
        observer: Optional[AutomationObserver] = None,
        config: Optional[ControllerConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.secrets = secrets
        self.mutator = mutator
        self.observer = observer or AutomationObserver()
        self.config = config or ControllerConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def reconcile(self, key: NamespacedName) -> ReconcileResult:
        start = time.perf_counter()
        try:
            auto = self.store.get_automation(key)
        except ObjectNotFound:
            log_debug("automation not found, assuming deleted", automation=str(key))
            return ReconcileResult()

        try:
            return self._reconcile(key, auto)
        finally:
            suspended = auto.spec.suspend and auto.metadata.deletion_timestamp is None
            self._notify("suspension", auto, suspended)
            self._notify("reconcile_duration", auto, time.perf_counter() - start)

    def requeue_interval(self, auto: ImageUpdateAutomation) -> float:
        return max(auto.spec.interval, self.config.min_interval)

    def _reconcile(self, key: NamespacedName, auto: ImageUpdateAutomation) -> ReconcileResult:
        # Whatever happens next, the reconcile request has now been seen
        token = auto.metadata.annotations.get(RECONCILE_REQUEST_ANNOTATION)
        if token:
            auto.status.last_handled_reconcile_at = token
            try:
                self._patch_status(key, auto.status)
            except Exception as e:
                log_error("failed to record reconcile request", automation=str(key), error=str(e))
                return ReconcileResult(requeue=True, error=e)

        if auto.spec.suspend:
            log_info("ImageUpdateAutomation is suspended, skipping automation run", automation=str(key))
            return ReconcileResult()

        self._notify("run_started", auto)
        try:
            with timeit("automation.run", automation=str(key)):
                return self._run(key, auto)
        except Exception as e:
            return self._fail(key, auto, e)
        finally:
            self._notify("readiness", auto, readiness(auto))

    # ------------------------------------------------------------------
    # The run itself
    # ------------------------------------------------------------------

    def _run(self, key: NamespacedName, auto: ImageUpdateAutomation) -> ReconcileResult:
        now = self._clock()

        source_ref = auto.spec.source_ref
        if source_ref.kind != GIT_REPOSITORY_KIND:
            raise UnsupportedSourceKindError(f"source kind {source_ref.kind!r} not supported")
        git_spec = auto.spec.git
        if git_spec is None:
            raise SpecValidationError(
                f"source kind {GIT_REPOSITORY_KIND} necessitates field .spec.git"
            )

        origin_key = NamespacedName(key.namespace, source_ref.name)
        try:
            origin = self.store.get_git_repository(origin_key)
        except ObjectNotFound as e:
            log_error("referenced git repository does not exist", automation=str(key), error=str(e))
            set_readiness(
                auto, CONDITION_FALSE, GIT_NOT_AVAILABLE_REASON,
                "referenced git repository is missing", now,
            )
            # No requeue: the source's reappearance triggers the next run
            return self._patch_or_requeue(key, auto, ReconcileResult())
        log_debug("found git repository", gitrepository=str(origin_key))

        # The automation's own settings win over the source's defaults
        checkout_ref = git_spec.checkout.reference if git_spec.checkout else origin.spec.reference
        push_branch = git_spec.push.branch if git_spec.push else ""
        if not push_branch:
            if checkout_ref is None or not checkout_ref.branch:
                raise PushBranchUnresolvedError(
                    "push branch not given explicitly, and cannot be inferred from "
                    ".spec.git.checkout.ref or GitRepository .spec.ref"
                )
            push_branch = checkout_ref.branch
        implementation = origin.spec.git_implementation or self.config.default_git_implementation
        backend = get_backend(implementation, self.config)

        with self._workspace(key) as root:
            run = AutomationRun(
                key=key,
                push_branch=push_branch,
                checkout_ref=checkout_ref,
                implementation=implementation,
                root=root,
            )
            run.access = resolve_repo_access(self.secrets, origin, run.auth_dir)
            repo = backend.clone(run.access, checkout_ref, run.workdir)

            # With a push spec, commits go to the push branch
            if git_spec.push is not None and git_spec.push.branch:
                fetched = backend.fetch_branch(run.workdir, repo, push_branch, run.access)
                if fetched is FetchResult.BRANCH_MISSING:
                    log_debug("push branch not on remote yet, creating it", branch=push_branch)
                backend.switch_branch(repo, push_branch)
            log_debug(
                "cloned git repository",
                gitrepository=str(origin_key),
                ref=checkout_ref.model_dump() if checkout_ref else None,
                working=str(run.workdir),
            )

            update = auto.spec.update
            manifests = secure_join(run.workdir, update.path if update else "")

            if update is None or update.strategy != UPDATE_STRATEGY_SETTERS:
                return self._no_strategy(key, auto, now)

            # Any policy in the namespace may be referenced by a setter marker
            policies = self.store.list_image_policies(key.namespace)
            result = self.mutator.mutate(manifests, policies)
            log_debug("ran updates to working dir", working=str(run.workdir))

            template = git_spec.commit.message_template or self.config.default_message_template
            message = render_commit_message(template, key, result)

            signer = None
            if git_spec.commit.signing_key is not None:
                signer = load_signing_identity(
                    self.secrets,
                    key.namespace,
                    git_spec.commit.signing_key.secret_ref.name,
                    run.gnupg_home,
                    key_field=self.config.signing_secret_key,
                )

            author = Actor(git_spec.commit.author.name, git_spec.commit.author.email)
            outcome = backend.commit(repo, run.workdir, signer, author, message)

            if not outcome.changed:
                self._notify("event", auto, EVENT_SEVERITY_INFO, "no updates made")
                log_debug("no changes made in working directory; no commit")
                run.status_message = "no updates made"
                last_commit = auto.status.last_push_commit
                if last_commit:
                    run.status_message += f"; last commit {last_commit[:7]}"
                    if auto.status.last_push_time is not None:
                        run.status_message += f" at {_rfc3339(auto.status.last_push_time)}"
            else:
                revision = outcome.revision
                # A commit checkout without a push spec commits on a detached HEAD
                backend.attach_head(repo, push_branch)
                backend.push(run.workdir, repo, push_branch, run.access)
                self._notify(
                    "event", auto, EVENT_SEVERITY_INFO,
                    f"committed and pushed change {revision} to {push_branch}",
                )
                self._notify("committed", auto, revision, push_branch)
                log_info("pushed commit to origin", revision=revision, branch=push_branch)
                auto.status.last_push_commit = revision
                auto.status.last_push_time = now
                run.status_message = f"committed and pushed {revision} to {push_branch}"

        auto.status.last_automation_run_time = now
        set_readiness(
            auto, CONDITION_TRUE, RECONCILIATION_SUCCEEDED_REASON, run.status_message, now
        )
        # Nothing more to do until the interval passes or something changes
        return self._patch_or_requeue(
            key, auto, ReconcileResult(requeue_after=self.requeue_interval(auto))
        )

    def _no_strategy(self, key: NamespacedName, auto: ImageUpdateAutomation, now: datetime) -> ReconcileResult:
        log_info("no update strategy given for automation", automation=str(key))
        self._notify(
            "event", auto, EVENT_SEVERITY_INFO,
            "no known update strategy in spec, failing trivially",
        )
        set_readiness(
            auto, CONDITION_FALSE, NO_STRATEGY_REASON,
            "no known update strategy is given for object", now,
        )
        # No sense rescheduling until the object changes
        try:
            self._patch_status(key, auto.status)
        except Exception as e:
            log_error("failed to record missing update strategy", automation=str(key), error=str(e))
        return ReconcileResult()

    def _fail(self, key: NamespacedName, auto: ImageUpdateAutomation, err: Exception) -> ReconcileResult:
        message = str(err)
        log_error("automation run failed", automation=str(key), error=message)
        self._notify("event", auto, EVENT_SEVERITY_ERROR, message)
        set_readiness(auto, CONDITION_FALSE, RECONCILIATION_FAILED_REASON, message, self._clock())
        try:
            self._patch_status(key, auto.status)
        except Exception as patch_err:
            log_error("failed to record failure in status", automation=str(key), error=str(patch_err))
        return ReconcileResult(requeue=True, error=err)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _patch_status(self, key: NamespacedName, status: ImageUpdateAutomationStatus) -> None:
        """Write ``status`` over the object as it is now, not as it was read."""
        current = self.store.get_automation(key)
        self.store.patch_status(current, status.model_copy(deep=True))

    def _patch_or_requeue(
        self, key: NamespacedName, auto: ImageUpdateAutomation, result: ReconcileResult
    ) -> ReconcileResult:
        try:
            self._patch_status(key, auto.status)
        except Exception as e:
            log_error("failed to patch status", automation=str(key), error=str(e))
            return ReconcileResult(requeue=True, error=e)
        return result

    @contextmanager
    def _workspace(self, key: NamespacedName) -> Iterator[Path]:
        parent = self.config.work_root()
        if parent is not None:
            parent.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=f"{key.namespace}-{key.name}-", dir=parent))
        try:
            yield root
        finally:
            try:
                shutil.rmtree(root)
            except OSError as e:
                log_warning("could not remove working directory", path=str(root), error=str(e))

    def _notify(self, hook: str, *args) -> None:
        try:
            getattr(self.observer, hook)(*args)
        except Exception as e:
            log_warning("observer hook failed", hook=hook, error=str(e))
