"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    ``VALIDATION`` covers operator mistakes (bad arguments, unknown servers,
    wrong lifecycle state). ``PROVIDER`` covers runtime failures reported by
    Docker, upstream manifests or the filesystem.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
