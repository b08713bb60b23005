"""Git operations for automation runs, over two interchangeable backends.

``GitPythonBackend`` ("gitpython") drives git through GitPython's command
wrapper and reports failures as ``GitCommandError``. ``GitCliBackend``
("git-cli") runs the ``git`` binary directly and works from exit codes and raw
stderr. A source object picks one through ``spec.gitImplementation``.

Only clone, fetch and push differ per backend. Switching branches and
committing always go through a GitPython ``Repo``: ``clone`` returns one
whichever backend did the cloning, and the commit logic (staging, symlink
filtering, signing) exists once, against GitPython's index.

Deadlines are not symmetric. ``GitCliBackend`` bounds every git process by
``config.git_timeout``. ``GitPythonBackend`` bounds fetch and push the same
way (``kill_after_timeout``), but ``Repo.clone_from`` has no timeout and runs
until git itself gives up.
"""

from __future__ import annotations

import os
import shlex
import stat
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from pathlib import Path
from subprocess import TimeoutExpired
from typing import Dict, List, Optional, Tuple, Type

from git import Actor, GitCommandError, Repo
from git.objects import Commit
from gitdb import IStream

from .access import RepoAccess
from .config import ControllerConfig
from .errors import (
    GitCheckoutError,
    GitCloneError,
    GitCommitError,
    GitFetchError,
    GitPushError,
    UnsupportedImplementationError,
)
from .models import GIT_CLI_IMPLEMENTATION, GITPYTHON_IMPLEMENTATION, GitRepositoryRef
from .observability import log_debug, log_warning, timeit
from .push_errors import normalize_cli_push_error, normalize_gitpython_push_error
from .signing import SigningIdentity


class FetchResult(Enum):
    FETCHED = "fetched"
    # The branch does not exist on the remote yet; create it locally instead
    BRANCH_MISSING = "branch_missing"


@dataclass(frozen=True)
class CommitResult:
    revision: Optional[str]

    @property
    def changed(self) -> bool:
        return self.revision is not None


NO_CHANGES = CommitResult(revision=None)


def branch_refspec(branch: str) -> str:
    return f"refs/heads/{branch}:refs/heads/{branch}"


def _is_missing_remote_ref(stderr: str) -> bool:
    lowered = stderr.lower()
    return "couldn't find remote ref" in lowered or "could not find remote ref" in lowered


def _checkout_target(ref: Optional[GitRepositoryRef]) -> Tuple[Optional[str], Optional[str]]:
    """Return (branch or tag to clone, commit to check out afterwards)."""
    if ref is None:
        return None, None
    if ref.commit:
        return ref.branch or None, ref.commit
    if ref.tag:
        return ref.tag, None
    if ref.branch:
        return ref.branch, None
    return None, None


def _command_stderr(error: GitCommandError) -> str:
    """Undo GitPython's ``stderr: '...'`` wrapping."""
    text = (error.stderr or "").strip()
    prefix = "stderr: '"
    if text.startswith(prefix):
        text = text[len(prefix):]
        if text.endswith("'"):
            text = text[:-1]
    return text.strip()


class GitBackend:
    """Uniform git operations; subclasses supply clone, fetch and push."""

    name = ""

    def __init__(self, config: ControllerConfig):
        self.config = config

    @property
    def remote(self) -> str:
        return self.config.remote_name

    @property
    def timeout(self) -> float:
        return self.config.git_timeout

    def clone(self, access: RepoAccess, ref: Optional[GitRepositoryRef], path: Path) -> Repo:
        raise NotImplementedError

    def fetch_branch(self, path: Path, repo: Repo, branch: str, access: RepoAccess) -> FetchResult:
        raise NotImplementedError

    def push(self, path: Path, repo: Repo, branch: str, access: RepoAccess) -> None:
        raise NotImplementedError

    def switch_branch(self, repo: Repo, branch: str) -> None:
        switch_branch(repo, branch)

    def attach_head(self, repo: Repo, branch: str) -> None:
        attach_detached_head(repo, branch)

    def commit(
        self,
        repo: Repo,
        repo_path: Path,
        signer: Optional[SigningIdentity],
        author: Actor,
        message: str,
    ) -> CommitResult:
        return commit_changed_manifests(repo, repo_path, signer, author, message)


class GitPythonBackend(GitBackend):
    name = GITPYTHON_IMPLEMENTATION

    def clone(self, access: RepoAccess, ref: Optional[GitRepositoryRef], path: Path) -> Repo:
        branch, commit = _checkout_target(ref)
        env = access.environment()
        kwargs: Dict[str, str] = {"origin": self.remote}
        if branch:
            kwargs["branch"] = branch
        with timeit("git.clone", backend=self.name, ref=branch, commit=commit):
            try:
                repo = Repo.clone_from(access.url, str(path), env=env, **kwargs)
                if commit:
                    repo.git.checkout("--detach", commit, env=env)
            except GitCommandError as e:
                raise GitCloneError(
                    f"failed to clone {access.url}: {_command_stderr(e) or e}"
                ) from e
        return repo

    def fetch_branch(self, path: Path, repo: Repo, branch: str, access: RepoAccess) -> FetchResult:
        log_debug("GIT_OP_START: fetch", backend=self.name, branch=branch)
        try:
            repo.git.fetch(
                "--update-head-ok",
                self.remote,
                branch_refspec(branch),
                env=access.environment(),
                kill_after_timeout=self.timeout,
            )
        except GitCommandError as e:
            stderr = _command_stderr(e)
            if _is_missing_remote_ref(stderr):
                log_debug("remote branch missing", branch=branch)
                return FetchResult.BRANCH_MISSING
            raise GitFetchError(f"failed to fetch branch {branch!r}: {stderr or e}") from e
        log_debug("GIT_OP_END: fetch", backend=self.name, branch=branch)
        return FetchResult.FETCHED

    def push(self, path: Path, repo: Repo, branch: str, access: RepoAccess) -> None:
        with timeit("git.push", backend=self.name, branch=branch):
            try:
                repo.git.push(
                    self.remote,
                    branch_refspec(branch),
                    env=access.environment(),
                    kill_after_timeout=self.timeout,
                )
            except GitCommandError as e:
                raise GitPushError(normalize_gitpython_push_error(self._push_summary(e))) from e

    @staticmethod
    def _push_summary(error: GitCommandError) -> str:
        """The first line the remote sent, else everything git printed."""
        stderr = _command_stderr(error)
        for line in stderr.splitlines():
            if line.startswith("remote:"):
                return line
        return stderr or str(error)


class GitCliBackend(GitBackend):
    name = GIT_CLI_IMPLEMENTATION

    def _run(
        self,
        args: List[str],
        env: Dict[str, str],
        *,
        cwd: Optional[Path] = None,
    ) -> subprocess.CompletedProcess:
        cmd = ["git", *args]
        quoted = " ".join(shlex.quote(part) for part in cmd)
        log_debug("GIT_OP_START", cmd=quoted)
        start = time.time()
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd is not None else None,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except TimeoutExpired:
            elapsed = time.time() - start
            log_warning("git command timed out", cmd=quoted, elapsed=round(elapsed, 2))
            return subprocess.CompletedProcess(
                cmd, -1, "", f"git {args[0]} timed out after {self.timeout:g}s"
            )
        log_debug(
            "GIT_OP_END",
            cmd=quoted,
            rc=result.returncode,
            elapsed=round(time.time() - start, 2),
        )
        result.stdout = result.stdout or ""
        result.stderr = result.stderr or ""
        return result

    def clone(self, access: RepoAccess, ref: Optional[GitRepositoryRef], path: Path) -> Repo:
        branch, commit = _checkout_target(ref)
        env = access.environment()
        args = ["clone", "--origin", self.remote]
        if branch:
            args += ["--branch", branch]
        args += ["--", access.url, str(path)]
        with timeit("git.clone", backend=self.name, ref=branch, commit=commit):
            result = self._run(args, env)
            if result.returncode != 0:
                raise GitCloneError(f"failed to clone {access.url}: {result.stderr.strip()}")
            if commit:
                result = self._run(["-C", str(path), "checkout", "--detach", commit], env)
                if result.returncode != 0:
                    raise GitCloneError(
                        f"failed to check out commit {commit}: {result.stderr.strip()}"
                    )
        return Repo(str(path))

    def fetch_branch(self, path: Path, repo: Repo, branch: str, access: RepoAccess) -> FetchResult:
        result = self._run(
            ["-C", str(path), "fetch", "--update-head-ok", self.remote, branch_refspec(branch)],
            access.environment(),
        )
        if result.returncode == 0:
            return FetchResult.FETCHED
        if _is_missing_remote_ref(result.stderr):
            log_debug("remote branch missing", branch=branch)
            return FetchResult.BRANCH_MISSING
        raise GitFetchError(f"failed to fetch branch {branch!r}: {result.stderr.strip()}")

    def push(self, path: Path, repo: Repo, branch: str, access: RepoAccess) -> None:
        with timeit("git.push", backend=self.name, branch=branch):
            result = self._run(
                ["-C", str(path), "push", self.remote, branch_refspec(branch)],
                access.environment(),
            )
            if result.returncode != 0:
                raise GitPushError(normalize_cli_push_error(result.stderr.strip()))


_BACKENDS: Dict[str, Type[GitBackend]] = {
    GITPYTHON_IMPLEMENTATION: GitPythonBackend,
    GIT_CLI_IMPLEMENTATION: GitCliBackend,
}


def get_backend(implementation: str, config: ControllerConfig) -> GitBackend:
    try:
        backend_cls = _BACKENDS[implementation]
    except KeyError:
        raise UnsupportedImplementationError(f"unknown git implementation {implementation!r}")
    return backend_cls(config)


# ---------------------------------------------------------------------------
# Shared operations (always against a GitPython Repo)
# ---------------------------------------------------------------------------


def switch_branch(repo: Repo, branch: str) -> None:
    """Check out ``branch``, creating it at HEAD if it does not exist locally."""
    try:
        head = next((h for h in repo.heads if h.name == branch), None)
        if head is None:
            log_debug("creating local branch from HEAD", branch=branch)
            head = repo.create_head(branch, repo.head.commit)
        head.checkout()
    except (GitCommandError, ValueError) as e:
        raise GitCheckoutError(f"failed to switch to branch {branch!r}: {e}") from e


def attach_detached_head(repo: Repo, branch: str) -> None:
    """Point local ``branch`` at a detached HEAD so pushing the branch pushes HEAD.

    A commit checkout leaves HEAD detached; the branch ref stays where clone
    put it, and pushing it would send nothing. Attached heads are left alone.
    """
    if not repo.head.is_detached:
        return
    try:
        log_debug("moving branch to detached HEAD", branch=branch, revision=repo.head.commit.hexsha)
        repo.create_head(branch, repo.head.commit, force=True)
    except (GitCommandError, ValueError) as e:
        raise GitCheckoutError(f"failed to move branch {branch!r} to HEAD: {e}") from e


def _working_tree_changes(repo: Repo) -> List[str]:
    paths = set(repo.untracked_files)
    for diff in repo.index.diff(None):
        paths.add(diff.a_path or diff.b_path)
    return sorted(paths)


def _serialize(commit: Commit) -> bytes:
    stream = BytesIO()
    # GitPython has no public API for signed commits; this is what
    # Commit.create_from_tree does internally.
    commit._serialize(stream)
    return stream.getvalue()


def _write_commit(
    repo: Repo,
    tree,
    parents: List[Commit],
    signer: Optional[SigningIdentity],
    author: Actor,
    message: str,
) -> str:
    now = int(time.time())
    commit = Commit(
        repo,
        Commit.NULL_BIN_SHA,
        tree=tree,
        author=author,
        authored_date=now,
        author_tz_offset=0,
        committer=author,
        committed_date=now,
        committer_tz_offset=0,
        message=message,
        parents=parents,
        encoding=Commit.default_encoding,
    )
    if signer is not None:
        # The signature covers the commit exactly as it reads without gpgsig
        commit.gpgsig = signer.sign(_serialize(commit))

    payload = _serialize(commit)
    istream = repo.odb.store(IStream(Commit.type, len(payload), BytesIO(payload)))
    commit.binsha = istream.binsha
    summary = message.splitlines()[0] if message else ""
    repo.head.set_commit(commit, logmsg=f"commit: {summary}")
    return commit.hexsha


def commit_changed_manifests(
    repo: Repo,
    repo_path: Path,
    signer: Optional[SigningIdentity],
    author: Actor,
    message: str,
) -> CommitResult:
    """Stage every working-tree change and commit it on the current HEAD.

    Broken symlinks are skipped: some diff implementations report symlinks to
    absolute paths outside the checkout as modified, and a dangling link is
    never something to commit. Returns NO_CHANGES when nothing is left to
    commit.
    """
    repo_path = Path(repo_path)
    try:
        candidates = _working_tree_changes(repo)
    except GitCommandError as e:
        raise GitCommitError(f"failed to read working tree status: {e}") from e

    to_add: List[str] = []
    to_remove: List[str] = []
    for rel in candidates:
        abspath = repo_path / rel
        try:
            info = os.lstat(abspath)
        except FileNotFoundError:
            to_remove.append(rel)
            continue
        except OSError as e:
            raise GitCommitError(f"checking if {rel} is a symlink: {e}") from e
        if stat.S_ISLNK(info.st_mode) and not abspath.exists():
            log_debug("skipping broken symlink", path=rel)
            continue
        to_add.append(rel)

    if not to_add and not to_remove:
        return NO_CHANGES

    try:
        index = repo.index
        if to_add:
            index.add(to_add)
        if to_remove:
            index.remove(to_remove)
        index.write()
        tree = index.write_tree()

        parents: List[Commit] = []
        if repo.head.is_valid():
            parents = [repo.head.commit]
            # Rewritten-but-identical files show up as modified until staged
            if parents[0].tree.binsha == tree.binsha:
                return NO_CHANGES

        revision = _write_commit(repo, tree, parents, signer, author, message)
    except (GitCommandError, OSError, ValueError) as e:
        raise GitCommitError(f"failed to commit changes: {e}") from e

    log_debug("committed changes", revision=revision, files=len(to_add) + len(to_remove))
    return CommitResult(revision=revision)
