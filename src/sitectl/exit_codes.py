"""Enumerations for CLI exit codes shared by every sitectl command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    INTERNAL = 1
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    DRIFT = 5
    NOT_FOUND = 10
    ALREADY_REGISTERED = 11
    INVALID_STATE = 12
    PORT_EXHAUSTED = 13
