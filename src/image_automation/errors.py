"""Exception hierarchy for image update automation runs.

Everything that can end a run raises a subclass of ``AutomationError``; the
reconciler catches them at the top of the run and records ``str(err)`` in the
readiness condition. "Remote branch missing" and "no changes to commit" are
return values (see ``git_backends``), not exceptions.
"""

from __future__ import annotations


class AutomationError(Exception):
    """Base exception for automation runs."""
    pass


class ObjectNotFound(AutomationError):
    """A referenced object or secret does not exist."""

    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} '{namespace}/{name}' not found")


class SpecValidationError(AutomationError):
    """The automation (or its source) cannot be acted on as written."""
    pass


class UnsupportedSourceKindError(SpecValidationError):
    pass


class PushBranchUnresolvedError(SpecValidationError):
    pass


class UnsupportedImplementationError(SpecValidationError):
    pass


class ManifestPathError(SpecValidationError):
    """The update path escapes the repository root."""
    pass


class AuthError(AutomationError):
    """Failed to derive credentials for the source repository."""
    pass


class GitOperationError(AutomationError):
    """Base exception for git operations."""
    pass


class GitCloneError(GitOperationError):
    pass


class GitFetchError(GitOperationError):
    pass


class GitCheckoutError(GitOperationError):
    pass


class GitCommitError(GitOperationError):
    pass


class GitPushError(GitOperationError):
    """Push failed; the message has already been normalized."""
    pass


class MessageTemplateError(AutomationError):
    """Commit message template could not be parsed or executed."""
    pass


class SigningKeyError(AutomationError):
    """Signing key could not be loaded from its secret."""
    pass


class NoSigningIdentityError(SigningKeyError):
    pass


class MultipleSigningIdentitiesError(SigningKeyError):
    pass
