"""Error taxonomy shared by the stores, controllers, and CLI.

Every error carries a human readable ``category`` (printed in the single-line
CLI failure message) and the :class:`~kwoctl.exit_codes.ExitCode` the CLI
should terminate with.
"""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class KwoError(RuntimeError):
    """Base class for failures surfaced to operators."""

    category = "Error"
    exit_code = ExitCode.USAGE


class UsageError(KwoError):
    """Raised when command input is malformed outside of naming rules."""

    category = "Usage"


class InvalidNameError(KwoError):
    """Raised when an entity name or suffix fails validation."""

    category = "InvalidName"


class UnsupportedProviderError(KwoError):
    """Raised when a DNS provider outside the supported set is requested."""

    category = "UnsupportedProvider"


class AlreadyExistsError(KwoError):
    """Raised when creating an entity whose name is already taken."""

    category = "AlreadyExists"
    exit_code = ExitCode.CONFLICT


class NotFoundError(KwoError):
    """Raised when an entity or store key does not exist."""

    category = "NotFound"
    exit_code = ExitCode.CONFLICT


class ConcurrentModificationError(KwoError):
    """Raised when a compare-and-swap write detects a newer document."""

    category = "ConcurrentModification"
    exit_code = ExitCode.CONFLICT


class StoreUnavailableError(KwoError):
    """Raised when a backing document cannot be read or written."""

    category = "StoreUnavailable"


class MissingCredentialError(KwoError):
    """Raised when required credential input is missing or empty."""

    category = "MissingCredential"
    exit_code = ExitCode.MISSING_CREDENTIAL


class ReadinessTimeoutError(KwoError):
    """Raised when bounded polling gives up waiting for a resource."""

    category = "Timeout"


class DownstreamReloadError(KwoError):
    """Raised when a consuming service fails to pick up regenerated config."""

    category = "DownstreamReloadFailed"


class ConfirmationDeclinedError(KwoError):
    """Raised when the operator declines a destructive operation."""

    category = "Declined"
    exit_code = ExitCode.DECLINED


class PrivilegeError(KwoError):
    """Raised when the caller lacks root or the cluster API forbids a call."""

    category = "InsufficientPrivilege"
    exit_code = ExitCode.PRIVILEGE


class ProvisioningError(KwoError):
    """Raised when an ensure step fails after earlier steps succeeded.

    Nothing is rolled back; ``completed`` lists what is already in place so
    the operator knows re-running the create is the recovery path.
    """

    category = "ProvisioningFailed"

    def __init__(self, step: str, reason: str, completed: Sequence[str] = ()) -> None:
        self.step = step
        self.reason = reason
        self.completed = tuple(completed)
        done = ", ".join(self.completed) if self.completed else "nothing"
        super().__init__(
            f"step '{step}' failed: {reason} (already applied: {done}; re-run to resume)"
        )


def format_error(exc: KwoError) -> str:
    """Return the single-line categorised message printed by the CLI."""
    message = " ".join(str(exc).split())
    return f"Error [{exc.category}]: {message}"


__all__ = [
    "AlreadyExistsError",
    "ConcurrentModificationError",
    "ConfirmationDeclinedError",
    "DownstreamReloadError",
    "InvalidNameError",
    "KwoError",
    "MissingCredentialError",
    "NotFoundError",
    "PrivilegeError",
    "ProvisioningError",
    "ReadinessTimeoutError",
    "StoreUnavailableError",
    "UnsupportedProviderError",
    "UsageError",
    "format_error",
]
