"""Repository URL and credentials for one automation run.

Both backends drive git transports, so credentials are materialized once as
files in a run-owned directory and handed to git through its environment:

- http(s): ``username``/``password`` via an askpass helper, optional ``caFile``
- ssh (``ssh://`` or ``user@host:path``): ``identity`` + ``known_hosts``
- anything else (local paths, ``file://``): no credentials
"""

from __future__ import annotations

import os
import re
import shlex
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from .errors import AuthError, ObjectNotFound, UnsupportedImplementationError
from .interfaces import SecretStore
from .models import GIT_CLI_IMPLEMENTATION, GITPYTHON_IMPLEMENTATION, GitRepository


SUPPORTED_IMPLEMENTATIONS = (GITPYTHON_IMPLEMENTATION, GIT_CLI_IMPLEMENTATION)

ENV_USERNAME = "IMAGE_AUTOMATION_GIT_USERNAME"
ENV_PASSWORD = "IMAGE_AUTOMATION_GIT_PASSWORD"

_SCP_LIKE = re.compile(r"^[\w.+-]+@[\w.-]+:")

_ASKPASS_SCRIPT = f"""#!/bin/sh
case "$1" in
  Username*) printf '%s\\n' "${ENV_USERNAME}" ;;
  *) printf '%s\\n' "${ENV_PASSWORD}" ;;
esac
"""


@dataclass
class GitAuth:
    """Credential material for git, as files under the run's auth directory."""

    username: str = ""
    password: str = ""
    askpass: Optional[Path] = None
    ca_file: Optional[Path] = None
    identity_file: Optional[Path] = None
    known_hosts_file: Optional[Path] = None

    def environment(self) -> Dict[str, str]:
        env: Dict[str, str] = {}
        if self.askpass is not None:
            env["GIT_ASKPASS"] = str(self.askpass)
            env[ENV_USERNAME] = self.username
            env[ENV_PASSWORD] = self.password
        if self.ca_file is not None:
            env["GIT_CONFIG_COUNT"] = "1"
            env["GIT_CONFIG_KEY_0"] = "http.sslCAInfo"
            env["GIT_CONFIG_VALUE_0"] = str(self.ca_file)
        if self.identity_file is not None and self.known_hosts_file is not None:
            env["GIT_SSH_COMMAND"] = " ".join([
                "ssh",
                "-i", shlex.quote(str(self.identity_file)),
                "-o", "IdentitiesOnly=yes",
                "-o", "BatchMode=yes",
                "-o", f"UserKnownHostsFile={shlex.quote(str(self.known_hosts_file))}",
                "-o", "StrictHostKeyChecking=yes",
            ])
        return env


@dataclass
class RepoAccess:
    url: str
    auth: Optional[GitAuth] = None
    extra_env: Dict[str, str] = field(default_factory=dict)

    def environment(self) -> Dict[str, str]:
        """Environment for every git process touching the remote."""
        env = os.environ.copy()
        # Fail fast instead of prompting; keep messages in English for matching
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["LC_ALL"] = "C"
        env.setdefault("GIT_ASKPASS", "echo")
        if self.url.startswith("git@") or self.url.startswith("ssh://"):
            env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        if self.auth is not None:
            env.update(self.auth.environment())
        env.update(self.extra_env)
        return env


def transport_for_url(url: str) -> str:
    """Classify ``url`` as "https", "ssh" or "none"."""
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https"):
        return "https"
    if parsed.scheme == "ssh":
        return "ssh"
    if not parsed.scheme and _SCP_LIKE.match(url):
        return "ssh"
    return "none"


def _write_private(path: Path, data: bytes, mode: int = stat.S_IRUSR | stat.S_IWUSR) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    path.chmod(mode)
    return path


def _text(data: bytes) -> str:
    return data.decode("utf-8").strip()


def _basic_auth(secret: Dict[str, bytes], auth_dir: Path) -> GitAuth:
    auth = GitAuth()
    if "username" in secret:
        if "password" not in secret:
            raise ValueError("secret contains 'username' but no 'password'")
        auth.username = _text(secret["username"])
        auth.password = _text(secret["password"])
        auth.askpass = _write_private(
            auth_dir / "askpass.sh",
            _ASKPASS_SCRIPT.encode("utf-8"),
            stat.S_IRWXU,
        )
    if "caFile" in secret:
        auth.ca_file = _write_private(auth_dir / "ca.crt", secret["caFile"])
    if auth.askpass is None and auth.ca_file is None:
        raise ValueError(
            "invalid secret data: required fields 'username' and 'password', or 'caFile'"
        )
    return auth


def _public_key_auth(secret: Dict[str, bytes], auth_dir: Path) -> GitAuth:
    identity = secret.get("identity")
    if not identity:
        raise ValueError("invalid secret data: required field 'identity'")
    known_hosts = secret.get("known_hosts")
    if not known_hosts:
        raise ValueError("invalid secret data: required field 'known_hosts'")
    if not identity.endswith(b"\n"):
        identity += b"\n"
    return GitAuth(
        identity_file=_write_private(auth_dir / "identity", identity),
        known_hosts_file=_write_private(auth_dir / "known_hosts", known_hosts),
    )


AuthStrategy = Callable[[Dict[str, bytes], Path], GitAuth]


def auth_strategy_for_url(url: str, implementation: str) -> Optional[AuthStrategy]:
    """Pick how a secret turns into credentials for ``url``.

    Returns None when the transport takes no credentials.

    Raises:
        UnsupportedImplementationError: For an unknown backend selector
    """
    if implementation not in SUPPORTED_IMPLEMENTATIONS:
        raise UnsupportedImplementationError(f"unknown git implementation {implementation!r}")
    transport = transport_for_url(url)
    if transport == "https":
        return _basic_auth
    if transport == "ssh":
        return _public_key_auth
    return None


def resolve_repo_access(
    secrets: SecretStore,
    repository: GitRepository,
    auth_dir: Path,
) -> RepoAccess:
    """Derive URL and credentials for ``repository``.

    Credential files are written below ``auth_dir``, which the caller owns and
    removes.
    """
    url = repository.spec.url
    access = RepoAccess(url=url)
    implementation = repository.spec.git_implementation or GITPYTHON_IMPLEMENTATION
    strategy = auth_strategy_for_url(url, implementation)

    secret_ref = repository.spec.secret_ref
    if secret_ref is None or strategy is None:
        return access

    try:
        secret = secrets.get_secret(repository.metadata.namespace, secret_ref.name)
    except ObjectNotFound as e:
        raise AuthError(f"auth secret error: {e}") from e

    try:
        access.auth = strategy(secret, auth_dir)
    except (ValueError, UnicodeDecodeError) as e:
        raise AuthError(f"auth error: {e}") from e
    return access
