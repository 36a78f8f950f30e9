"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    ``VALIDATION`` covers manifest and argument problems detected locally,
    ``ENVIRONMENT`` a missing or unusable ``multipass`` binary, and
    ``PROVIDER`` failures reported by ``multipass`` itself.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
