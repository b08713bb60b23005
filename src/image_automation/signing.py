"""OpenPGP commit signing identities loaded from secrets.

Keys are imported into a throwaway GnuPG home owned by the run, so nothing
leaks between runs or into the user's keyring.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import gnupg

from .errors import (
    MultipleSigningIdentitiesError,
    NoSigningIdentityError,
    ObjectNotFound,
    SigningKeyError,
)
from .interfaces import SecretStore
from .observability import log_debug


@dataclass
class SigningIdentity:
    gpg: gnupg.GPG
    fingerprint: str
    uids: List[str] = field(default_factory=list)

    def sign(self, payload: bytes) -> str:
        """Return an ASCII-armored detached signature over ``payload``."""
        result = self.gpg.sign(payload, keyid=self.fingerprint, detach=True, binary=False)
        if not result:
            raise SigningKeyError(
                f"could not sign with key {self.fingerprint}: {result.status or result.stderr}"
            )
        return str(result)


def load_signing_identity(
    secrets: SecretStore,
    namespace: str,
    secret_name: str,
    gnupg_home: Path,
    *,
    key_field: str = "git.asc",
) -> SigningIdentity:
    """Read exactly one signing identity from ``key_field`` of the named secret.

    Raises:
        SigningKeyError: Secret or key field missing, unusable key material
        NoSigningIdentityError: The key ring holds no identity
        MultipleSigningIdentitiesError: The key ring holds more than one
    """
    ref = f"{namespace}/{secret_name}"
    try:
        secret = secrets.get_secret(namespace, secret_name)
    except ObjectNotFound as e:
        raise SigningKeyError(f"could not find signing key secret '{ref}': {e}") from e

    data = secret.get(key_field)
    if data is None:
        raise SigningKeyError(f"signing key secret '{ref}' does not contain a '{key_field}' key")

    gnupg_home.mkdir(mode=0o700, parents=True, exist_ok=True)
    try:
        gpg = gnupg.GPG(gnupghome=str(gnupg_home))
    except (OSError, ValueError) as e:
        raise SigningKeyError(f"could not start gpg to read signing key from secret '{ref}': {e}") from e

    imported = gpg.import_keys(data)
    fingerprints = sorted({fp for fp in imported.fingerprints if fp})
    log_debug("imported signing key ring", secret=ref, fingerprints=fingerprints)

    if not fingerprints:
        raise NoSigningIdentityError(
            f"could not read signing key from secret '{ref}': no OpenPGP identity found"
        )
    if len(fingerprints) > 1:
        raise MultipleSigningIdentitiesError(
            f"multiple entities read from secret '{ref}', could not determine which signing key to use"
        )

    fingerprint = fingerprints[0]
    for key in gpg.list_keys(secret=True):
        if key.get("fingerprint") == fingerprint:
            return SigningIdentity(gpg=gpg, fingerprint=fingerprint, uids=list(key.get("uids", [])))
    raise SigningKeyError(f"signing key in secret '{ref}' has no private key material")
