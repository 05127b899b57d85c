"""State management helpers for mcsctl."""
from __future__ import annotations

from .registry import (
    DuplicateNameError,
    ServerNotFoundError,
    ServerRegistry,
    StateRegistryError,
)

__all__ = [
    "DuplicateNameError",
    "ServerNotFoundError",
    "ServerRegistry",
    "StateRegistryError",
]
