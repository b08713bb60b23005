from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path
from typing import Dict

import pytest
from git import Repo


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))
    # Tests log to stderr only
    os.environ.setdefault("IMAGE_AUTOMATION_LOG_DISABLE_FILE", "1")


def seed_remote(remote_path: Path, files: Dict[str, str], branch: str = "main") -> Repo:
    """Create a bare remote whose ``branch`` holds ``files`` and is its HEAD."""
    remote = Repo.init(remote_path, bare=True)
    workdir = remote_path.parent / f"{remote_path.name}-seed"
    repo = Repo.init(workdir)
    for rel, content in files.items():
        target = workdir / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    repo.index.add(list(files))
    repo.index.commit("seed")
    repo.git.branch("-M", branch)
    repo.create_remote("origin", remote_path.as_posix())
    repo.remotes.origin.push(f"{branch}:{branch}")
    shutil.rmtree(workdir)
    # Clones without an explicit ref check out the default branch
    remote.git.symbolic_ref("HEAD", f"refs/heads/{branch}")
    return remote


def push_extra_commit(remote_path: Path, branch: str, rel: str, content: str) -> str:
    """Add a commit on top of ``branch`` in the remote; return its sha."""
    workdir = remote_path.parent / f"{remote_path.name}-extra"
    repo = Repo.clone_from(remote_path.as_posix(), workdir, branch=branch)
    target = workdir / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    repo.index.add([rel])
    commit = repo.index.commit(f"extra {rel}")
    repo.remotes.origin.push(f"{branch}:{branch}")
    shutil.rmtree(workdir)
    return commit.hexsha


@pytest.fixture
def remote_repo(tmp_path):
    path = tmp_path / "remote.git"
    seed_remote(path, {"README.md": "seed\n"})
    return path
