"""Enumerations for process exit codes shared by the CLI and entry point."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across helixctl."""

    OK = 0
    FAILURE = 1
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    INTEGRITY = 5
    SHUTDOWN_CRITICAL = 6
