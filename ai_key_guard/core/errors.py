"""
Error taxonomy for AI Key Guard.

Per-credential and per-target errors are isolated by the components that
raise them; only ConfigurationError is allowed to abort a run.
"""


class KeyGuardError(Exception):
    """Base class for all AI Key Guard errors."""


class TransientIOError(KeyGuardError):
    """Retryable network failure or timeout."""


class AuthError(KeyGuardError):
    """The issuing service rejected our credentials for one request."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class PartialDataError(KeyGuardError):
    """Usage data for a credential could not be collected completely."""

    def __init__(self, message: str, credential_id: str):
        super().__init__(message)
        self.credential_id = credential_id


class RotationTargetError(KeyGuardError):
    """A deployment target could not be updated or read back."""

    def __init__(self, message: str, target_id: str):
        super().__init__(message)
        self.target_id = target_id


class ConfigurationError(KeyGuardError, ValueError):
    """Missing or invalid configuration. Fatal before any work starts."""


class InvalidTransitionError(KeyGuardError):
    """A rotation job was asked to move along an edge it does not have."""


class StaleJobError(KeyGuardError):
    """A rotation job was written with an outdated version."""


class RunLockedError(KeyGuardError):
    """Another run already holds the lock for this scope."""

    def __init__(self, scope: str, owner: str):
        super().__init__(f"Run lock for scope '{scope}' is held by {owner}")
        self.scope = scope
        self.owner = owner


def mask_credential(value: str) -> str:
    """Return a log-safe representation of a credential value."""
    if not value:
        return "<empty>"
    if len(value) <= 8:
        return "****"
    return f"...{value[-4:]}"
