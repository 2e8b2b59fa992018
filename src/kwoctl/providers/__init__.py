"""Provider interfaces for kwoctl."""
from __future__ import annotations

from .htpasswd import HtpasswdError, HtpasswdProvider
from .kubectl import (
    KubectlConflictError,
    KubectlError,
    KubectlForbiddenError,
    KubectlNotFoundError,
    KubectlProvider,
)
from .probes import CredentialProbe, ProbeOutcome, ProbeResult
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "CredentialProbe",
    "HtpasswdError",
    "HtpasswdProvider",
    "KubectlConflictError",
    "KubectlError",
    "KubectlForbiddenError",
    "KubectlNotFoundError",
    "KubectlProvider",
    "ProbeOutcome",
    "ProbeResult",
    "SystemdError",
    "SystemdProvider",
]
