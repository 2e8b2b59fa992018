"""Enumerations for CLI exit codes shared by every command group."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    USAGE = 1
    CONFLICT = 2
    DECLINED = 3
    PRIVILEGE = 4
    MISSING_CREDENTIAL = 5
