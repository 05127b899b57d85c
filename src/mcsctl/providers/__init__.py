"""Provider interfaces for mcsctl."""
from __future__ import annotations

from .container_driver import (
    ConsoleSession,
    ContainerDriver,
    ContainerHandle,
    ContainerSpec,
    DriverError,
    DriverUnavailableError,
    LogStream,
    VolumeMount,
)
from .version_resolver import (
    ResolutionError,
    UnknownVersionError,
    VersionResolver,
    VersionUnavailableError,
)

__all__ = [
    "ConsoleSession",
    "ContainerDriver",
    "ContainerHandle",
    "ContainerSpec",
    "DriverError",
    "DriverUnavailableError",
    "LogStream",
    "ResolutionError",
    "UnknownVersionError",
    "VersionResolver",
    "VersionUnavailableError",
    "VolumeMount",
]
