import re
from datetime import datetime, timezone
from pathlib import Path

import pytest
from git import Repo

from conftest import push_extra_commit, seed_remote
from image_automation.config import ControllerConfig
from image_automation.errors import ObjectNotFound
from image_automation.models import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    READY_CONDITION,
    FileResult,
    GitRepository,
    ImagePolicy,
    ImageUpdateAutomation,
    NamespacedName,
    ObjectIdentifier,
    UpdateResult,
)
from image_automation.reconciler import ImageUpdateAutomationReconciler
from image_automation.testing import InMemorySecrets, InMemoryStore, RecordingObserver


NOW = datetime(2021, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
KEY = NamespacedName("default", "app-automation")

MARKER = re.compile(r'^(\s*image:\s*)(\S+)(\s*#\s*\{"\$imagepolicy":\s*"([^"]+)"\})$')

DEPLOYMENT = 'image: ghcr.io/acme/app:v1 # {"$imagepolicy": "default:app"}\n'


class SettersMutator:
    """Rewrites ``image:`` lines carrying a policy marker."""

    def __init__(self):
        self.roots = []

    def mutate(self, root: Path, policies):
        self.roots.append(root)
        latest = {
            f"{p.metadata.namespace}:{p.metadata.name}": p.status.latest_image for p in policies
        }
        files = {}
        for path in sorted(root.rglob("*.yaml")):
            rel = path.relative_to(root)
            if ".git" in rel.parts:
                continue
            lines = path.read_text().splitlines(keepends=True)
            changed = []
            for i, line in enumerate(lines):
                match = MARKER.match(line.rstrip("\n"))
                if not match:
                    continue
                image = latest.get(match.group(4))
                if not image or image == match.group(2):
                    continue
                lines[i] = f"{match.group(1)}{image}{match.group(3)}\n"
                changed.append(image)
            if changed:
                path.write_text("".join(lines))
                obj = ObjectIdentifier("Deployment", "default", path.stem)
                files[rel.as_posix()] = FileResult({obj: changed})
        return UpdateResult(files=files)


def _automation(**spec):
    base = {
        "sourceRef": {"kind": "GitRepository", "name": "app-repo"},
        "git": {
            "push": {"branch": "main"},
            "commit": {"author": {"name": "Fluxbot", "email": "flux@example.com"}},
        },
        "update": {"strategy": "Setters", "path": "./deploy"},
        "interval": 300,
    }
    base.update(spec)
    return ImageUpdateAutomation.model_validate({
        "metadata": {"name": KEY.name, "namespace": KEY.namespace},
        "spec": base,
    })


def _git_repository(url, implementation="gitpython", ref=None, secret=None):
    spec = {"url": url, "gitImplementation": implementation}
    if secret is not None:
        spec["secretRef"] = {"name": secret}
    if ref is not None:
        spec["ref"] = ref
    return GitRepository.model_validate({
        "metadata": {"name": "app-repo", "namespace": "default"},
        "spec": spec,
    })


def _policy(latest):
    return ImagePolicy.model_validate({
        "metadata": {"name": "app", "namespace": "default"},
        "status": {"latestImage": latest},
    })


@pytest.fixture
def remote(tmp_path):
    path = tmp_path / "remote.git"
    seed_remote(path, {"README.md": "seed\n", "deploy/app.yaml": DEPLOYMENT})
    return path


@pytest.fixture
def env(tmp_path):
    store = InMemoryStore()
    observer = RecordingObserver()
    mutator = SettersMutator()
    reconciler = ImageUpdateAutomationReconciler(
        store,
        InMemorySecrets(),
        mutator,
        observer=observer,
        config=ControllerConfig(work_dir=str(tmp_path / "work")),
        clock=lambda: NOW,
    )
    return store, observer, mutator, reconciler


def _ready(store):
    return store.automations[KEY].status.find_condition(READY_CONDITION)


def _remote_file(remote, branch, rel):
    repo = Repo(remote)
    return (repo.commit(branch).tree / rel).data_stream.read().decode()


class TestPreconditions:
    def test_missing_automation_is_noop(self, env):
        store, observer, _, reconciler = env
        result = reconciler.reconcile(KEY)
        assert not result.requeue and result.requeue_after is None and result.error is None
        assert observer.durations == []

    def test_suspended(self, env, remote):
        store, observer, mutator, reconciler = env
        store.add(_automation(suspend=True))
        store.add(_git_repository(remote.as_posix()))

        result = reconciler.reconcile(KEY)
        assert result.requeue_after is None and result.error is None
        assert observer.runs == 0
        assert observer.suspensions == [True]
        assert mutator.roots == []
        assert store.status_patches == []

    def test_reconcile_request_recorded_even_when_suspended(self, env):
        store, observer, _, reconciler = env
        auto = _automation(suspend=True)
        auto.metadata.annotations["reconcile.fluxcd.io/requestedAt"] = "2021-03-04T05:00:00Z"
        store.add(auto)

        reconciler.reconcile(KEY)
        assert store.automations[KEY].status.last_handled_reconcile_at == "2021-03-04T05:00:00Z"

    def test_unsupported_source_kind(self, env):
        store, observer, _, reconciler = env
        store.add(_automation(sourceRef={"kind": "Bucket", "name": "app-repo"}))

        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert "not supported" in str(result.error)
        ready = _ready(store)
        assert ready.status == CONDITION_FALSE
        assert ready.reason == "ReconciliationFailed"
        assert observer.events[-1][0] == "error"
        assert observer.suspensions == [False]

    def test_missing_git_spec(self, env):
        store, _, _, reconciler = env
        store.add(_automation(git=None))
        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert ".spec.git" in _ready(store).message

    def test_missing_source(self, env):
        store, observer, _, reconciler = env
        store.add(_automation())

        result = reconciler.reconcile(KEY)
        assert not result.requeue and result.error is None and result.requeue_after is None
        ready = _ready(store)
        assert ready.reason == "GitRepositoryNotAvailable"
        assert ready.message == "referenced git repository is missing"
        assert observer.conditions[-1].reason == "GitRepositoryNotAvailable"

    def test_push_branch_unresolved(self, env, remote):
        store, _, _, reconciler = env
        auto = _automation()
        auto.spec.git.push = None
        store.add(auto)
        store.add(_git_repository(remote.as_posix()))

        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert "push branch not given explicitly" in _ready(store).message

    def test_unknown_implementation(self, env, remote):
        store, _, _, reconciler = env
        store.add(_automation())
        store.add(_git_repository(remote.as_posix(), implementation="libgit2"))
        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert "libgit2" in _ready(store).message


@pytest.mark.parametrize("implementation", ["gitpython", "git-cli"])
class TestRuns:
    def test_commit_and_push(self, env, remote, implementation):
        store, observer, mutator, reconciler = env
        store.add(_automation())
        store.add(_git_repository(remote.as_posix(), implementation))
        store.add(_policy("ghcr.io/acme/app:v2"))

        result = reconciler.reconcile(KEY)
        assert result.error is None
        assert result.requeue_after == 300

        head = Repo(remote).commit("main")
        assert "ghcr.io/acme/app:v2" in _remote_file(remote, "main", "deploy/app.yaml")
        assert head.message == "Update from image update automation"
        assert head.author.name == "Fluxbot"

        status = store.automations[KEY].status
        assert status.last_push_commit == head.hexsha
        assert status.last_push_time == NOW
        assert status.last_automation_run_time == NOW
        ready = _ready(store)
        assert ready.status == CONDITION_TRUE
        assert ready.reason == "ReconciliationSucceeded"
        assert ready.message == f"committed and pushed {head.hexsha} to main"
        assert ("info", f"committed and pushed change {head.hexsha} to main") in observer.events
        assert observer.commits == [(head.hexsha, "main")]
        assert mutator.roots[0].name == "deploy"

    def test_no_updates(self, env, remote, implementation):
        store, observer, _, reconciler = env
        auto = _automation()
        auto.status.last_push_commit = "0123456789abcdef0123456789abcdef01234567"
        auto.status.last_push_time = datetime(2021, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        store.add(auto)
        store.add(_git_repository(remote.as_posix(), implementation))
        store.add(_policy("ghcr.io/acme/app:v1"))
        before = Repo(remote).commit("main").hexsha

        result = reconciler.reconcile(KEY)
        assert result.requeue_after == 300
        assert Repo(remote).commit("main").hexsha == before
        assert _ready(store).message == (
            "no updates made; last commit 0123456 at 2021-01-02T03:04:05Z"
        )
        assert ("info", "no updates made") in observer.events
        assert observer.commits == []

    def test_push_to_new_branch(self, env, remote, implementation):
        store, _, _, reconciler = env
        store.add(_automation(git={
            "checkout": {"ref": {"branch": "main"}},
            "push": {"branch": "image-updates"},
            "commit": {
                "author": {"name": "Fluxbot", "email": "flux@example.com"},
                "messageTemplate": "Update {{ AutomationObject.Name }}: {{ Updated.Images | join(', ') }}",
            },
        }))
        store.add(_git_repository(remote.as_posix(), implementation))
        store.add(_policy("ghcr.io/acme/app:v2"))
        main_before = Repo(remote).commit("main").hexsha

        result = reconciler.reconcile(KEY)
        assert result.error is None
        pushed = Repo(remote).commit("image-updates")
        assert pushed.parents[0].hexsha == main_before
        assert pushed.message == "Update app-automation: ghcr.io/acme/app:v2"
        assert Repo(remote).commit("main").hexsha == main_before

    def test_push_branch_builds_on_remote_tip(self, env, remote, implementation):
        store, _, _, reconciler = env
        Repo(remote).create_head("image-updates", "main")
        tip = push_extra_commit(remote, "image-updates", "NOTES", "notes\n")
        store.add(_automation(git={
            "push": {"branch": "image-updates"},
            "commit": {"author": {"name": "Fluxbot", "email": "flux@example.com"}},
        }))
        store.add(_git_repository(remote.as_posix(), implementation, ref={"branch": "main"}))
        store.add(_policy("ghcr.io/acme/app:v2"))

        reconciler.reconcile(KEY)
        pushed = Repo(remote).commit("image-updates")
        assert pushed.parents[0].hexsha == tip
        assert "NOTES" in [item.path for item in pushed.tree.traverse()]

    def test_push_inferred_from_source_ref(self, env, remote, implementation):
        store, _, _, reconciler = env
        auto = _automation()
        auto.spec.git.push = None
        store.add(auto)
        store.add(_git_repository(remote.as_posix(), implementation, ref={"branch": "main"}))
        store.add(_policy("ghcr.io/acme/app:v2"))

        result = reconciler.reconcile(KEY)
        assert result.error is None
        assert "ghcr.io/acme/app:v2" in _remote_file(remote, "main", "deploy/app.yaml")

    def test_push_rejected(self, env, remote, implementation):
        store, observer, _, reconciler = env
        hook = remote / "hooks" / "pre-receive"
        hook.write_text("#!/bin/sh\necho 'read-only mirror' >&2\nexit 1\n")
        hook.chmod(0o755)
        store.add(_automation())
        store.add(_git_repository(remote.as_posix(), implementation))
        store.add(_policy("ghcr.io/acme/app:v2"))

        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert "read-only mirror" in _ready(store).message
        assert observer.commits == []
        assert store.automations[KEY].status.last_push_commit == ""

    def test_commit_ref_without_push_spec(self, env, remote, implementation):
        store, _, _, reconciler = env
        seed = Repo(remote).commit("main").hexsha
        store.add(_automation(git={
            "checkout": {"ref": {"branch": "main", "commit": seed}},
            "commit": {"author": {"name": "Fluxbot", "email": "flux@example.com"}},
        }))
        store.add(_git_repository(remote.as_posix(), implementation))
        store.add(_policy("ghcr.io/acme/app:v2"))

        result = reconciler.reconcile(KEY)
        assert result.error is None
        head = Repo(remote).commit("main")
        assert head.parents[0].hexsha == seed
        assert store.automations[KEY].status.last_push_commit == head.hexsha
        assert _ready(store).message == f"committed and pushed {head.hexsha} to main"
        assert "ghcr.io/acme/app:v2" in _remote_file(remote, "main", "deploy/app.yaml")

    def test_stale_commit_ref_is_rejected(self, env, remote, implementation):
        store, observer, _, reconciler = env
        seed = Repo(remote).commit("main").hexsha
        tip = push_extra_commit(remote, "main", "NOTES", "notes\n")
        store.add(_automation(git={
            "checkout": {"ref": {"branch": "main", "commit": seed}},
            "commit": {"author": {"name": "Fluxbot", "email": "flux@example.com"}},
        }))
        store.add(_git_repository(remote.as_posix(), implementation))
        store.add(_policy("ghcr.io/acme/app:v2"))

        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert _ready(store).status == CONDITION_FALSE
        assert Repo(remote).commit("main").hexsha == tip
        assert observer.commits == []

    def test_second_run_builds_on_pushed_branch(self, env, remote, implementation):
        store, _, _, reconciler = env
        store.add(_automation(git={
            "push": {"branch": "image-updates"},
            "commit": {"author": {"name": "Fluxbot", "email": "flux@example.com"}},
        }))
        store.add(_git_repository(remote.as_posix(), implementation, ref={"branch": "main"}))
        store.add(_policy("ghcr.io/acme/app:v2"))
        reconciler.reconcile(KEY)
        first = Repo(remote).commit("image-updates").hexsha

        store.add(_policy("ghcr.io/acme/app:v3"))
        result = reconciler.reconcile(KEY)
        assert result.error is None
        second = Repo(remote).commit("image-updates")
        assert second.parents[0].hexsha == first
        assert "ghcr.io/acme/app:v3" in _remote_file(remote, "image-updates", "deploy/app.yaml")
        assert store.automations[KEY].status.last_push_commit == second.hexsha
        assert "ghcr.io/acme/app:v1" in _remote_file(remote, "main", "deploy/app.yaml")

    def test_rerun_with_same_policy_makes_no_commit(self, env, remote, implementation):
        store, observer, _, reconciler = env
        store.add(_automation())
        store.add(_git_repository(remote.as_posix(), implementation))
        store.add(_policy("ghcr.io/acme/app:v2"))
        reconciler.reconcile(KEY)
        first = Repo(remote).commit("main").hexsha

        result = reconciler.reconcile(KEY)
        assert result.error is None
        assert result.requeue_after == 300
        assert Repo(remote).commit("main").hexsha == first
        assert _ready(store).message == (
            f"no updates made; last commit {first[:7]} at 2021-03-04T05:06:07Z"
        )
        assert len(observer.commits) == 1


class TestRunFailures:
    def _setup(self, env, remote, **spec):
        store, observer, mutator, reconciler = env
        store.add(_automation(**spec))
        store.add(_git_repository(remote.as_posix()))
        store.add(_policy("ghcr.io/acme/app:v2"))
        return store, observer, mutator, reconciler

    def test_no_update_strategy(self, env, remote):
        store, observer, mutator, reconciler = self._setup(env, remote, update=None)
        result = reconciler.reconcile(KEY)
        assert not result.requeue and result.error is None and result.requeue_after is None
        ready = _ready(store)
        assert ready.reason == "MissingUpdateStrategy"
        assert ready.message == "no known update strategy is given for object"
        assert ("info", "no known update strategy in spec, failing trivially") in observer.events
        assert mutator.roots == []

    def test_unknown_update_strategy(self, env, remote):
        store, _, _, reconciler = self._setup(
            env, remote, update={"strategy": "Regex", "path": "./deploy"}
        )
        reconciler.reconcile(KEY)
        assert _ready(store).reason == "MissingUpdateStrategy"

    def test_update_path_outside_repository(self, env, remote):
        store, _, mutator, reconciler = self._setup(
            env, remote, update={"strategy": "Setters", "path": "../../elsewhere"}
        )
        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert "outside the repository root" in _ready(store).message
        assert mutator.roots == []

    def test_bad_message_template(self, env, remote):
        store, _, _, reconciler = self._setup(env, remote, git={
            "push": {"branch": "main"},
            "commit": {"messageTemplate": "{{ Updated.Nope.Missing }}"},
        })
        before = Repo(remote).commit("main").hexsha
        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert "failed to run template" in _ready(store).message
        assert Repo(remote).commit("main").hexsha == before

    def test_missing_signing_secret(self, env, remote):
        store, _, _, reconciler = self._setup(env, remote, git={
            "push": {"branch": "main"},
            "commit": {"signingKey": {"secretRef": {"name": "signing"}}},
        })
        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert "could not find signing key secret 'default/signing'" in _ready(store).message

    def test_auth_secret_missing(self, env):
        store, _, _, reconciler = env
        store.add(_automation())
        store.add(_git_repository("https://git.example.com/acme/app.git", secret="creds"))
        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert _ready(store).message.startswith("auth secret error")

    def test_clone_failure(self, env, tmp_path):
        store, observer, _, reconciler = env
        store.add(_automation())
        store.add(_git_repository((tmp_path / "missing.git").as_posix()))
        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert "failed to clone" in str(result.error)
        assert observer.conditions[-1].status == CONDITION_FALSE


class TestBookkeeping:
    def test_interval_clamped(self, env, remote):
        store, _, _, reconciler = env
        store.add(_automation(interval=0.1))
        store.add(_git_repository(remote.as_posix()))
        store.add(_policy("ghcr.io/acme/app:v1"))
        assert reconciler.reconcile(KEY).requeue_after == 1.0

    def test_workspace_removed(self, env, remote, tmp_path):
        store, _, _, reconciler = env
        store.add(_automation())
        store.add(_git_repository(remote.as_posix()))
        store.add(_policy("ghcr.io/acme/app:v2"))
        reconciler.reconcile(KEY)
        assert list((tmp_path / "work").iterdir()) == []

    def test_workspace_removed_on_failure(self, env, remote, tmp_path):
        store, _, _, reconciler = env
        store.add(_automation(update={"strategy": "Setters", "path": "../.."}))
        store.add(_git_repository(remote.as_posix()))
        reconciler.reconcile(KEY)
        assert list((tmp_path / "work").iterdir()) == []

    def test_transition_time_kept_while_ready(self, env, remote):
        store, _, _, reconciler = env
        store.add(_automation())
        store.add(_git_repository(remote.as_posix()))
        store.add(_policy("ghcr.io/acme/app:v1"))
        reconciler.reconcile(KEY)
        first = _ready(store).last_transition_time

        reconciler._clock = lambda: datetime(2022, 1, 1, tzinfo=timezone.utc)
        reconciler.reconcile(KEY)
        assert _ready(store).last_transition_time == first
        assert store.automations[KEY].status.last_automation_run_time.year == 2022

    def test_final_patch_failure_requeues(self, env, remote):
        store, _, _, reconciler = env
        store.add(_automation())
        store.add(_git_repository(remote.as_posix()))
        store.add(_policy("ghcr.io/acme/app:v2"))
        store.fail_patch = ObjectNotFound("ImageUpdateAutomation", "default", KEY.name)

        result = reconciler.reconcile(KEY)
        assert result.requeue
        assert isinstance(result.error, ObjectNotFound)

    def test_no_strategy_patch_failure_is_not_an_error(self, env, remote):
        store, _, _, reconciler = env
        store.add(_automation(update=None))
        store.add(_git_repository(remote.as_posix()))
        store.fail_patch = RuntimeError("conflict")
        result = reconciler.reconcile(KEY)
        assert not result.requeue and result.error is None

    def test_failing_observer_does_not_break_run(self, env, remote):
        store, observer, _, reconciler = env

        def broken(*args):
            raise RuntimeError("observer down")

        observer.event = broken
        store.add(_automation())
        store.add(_git_repository(remote.as_posix()))
        store.add(_policy("ghcr.io/acme/app:v2"))
        result = reconciler.reconcile(KEY)
        assert result.error is None
        assert _ready(store).status == CONDITION_TRUE
