"""Core data models shared by the registry, resolver and orchestrator."""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

SERVER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

SYMBOLIC_TAGS = frozenset({"LATEST", "SNAPSHOT"})


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso(value: object) -> datetime | None:
    """Parse ISO timestamps written by :func:`now_iso` (``None`` when invalid)."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class ServerType(str, Enum):
    """Game-server distributions supported by the provisioning layer."""

    VANILLA = "VANILLA"
    PAPER = "PAPER"
    FORGE = "FORGE"
    FABRIC = "FABRIC"
    SPIGOT = "SPIGOT"
    PURPUR = "PURPUR"

    @classmethod
    def parse(cls, value: str | ServerType) -> ServerType:
        """Return the member matching *value* (case-insensitive)."""
        if isinstance(value, ServerType):
            return value
        normalized = str(value).strip().upper()
        try:
            return cls(normalized)
        except ValueError:
            allowed = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown server type '{value}'. Allowed: {allowed}.") from None

    @property
    def uses_loader(self) -> bool:
        """Return ``True`` for distributions that ship a separate mod loader."""
        return self in (ServerType.FORGE, ServerType.FABRIC)


class RuntimeStatus(str, Enum):
    """Container state as reported live by the driver."""

    ABSENT = "ABSENT"
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


class LifecycleState(str, Enum):
    """Orchestrator-level state of a managed server."""

    UNPROVISIONED = "UNPROVISIONED"
    PROVISIONED = "PROVISIONED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"

    @classmethod
    def from_runtime(cls, status: RuntimeStatus) -> LifecycleState:
        """Translate a driver status into the lifecycle state it implies."""
        return _RUNTIME_TO_LIFECYCLE[status]


_RUNTIME_TO_LIFECYCLE = {
    RuntimeStatus.ABSENT: LifecycleState.UNPROVISIONED,
    RuntimeStatus.CREATED: LifecycleState.PROVISIONED,
    RuntimeStatus.RUNNING: LifecycleState.RUNNING,
    RuntimeStatus.STOPPED: LifecycleState.STOPPED,
    RuntimeStatus.ERROR: LifecycleState.ERROR,
}


@dataclass(frozen=True, slots=True)
class ResolvedVersion:
    """A symbolic or explicit tag pinned to a concrete downloadable build."""

    server_type: ServerType
    tag: str
    version: str
    url: str
    build: str | None = None
    checksum: dict[str, str] | None = None
    resolved_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "server_type": self.server_type.value,
            "tag": self.tag,
            "version": self.version,
            "url": self.url,
            "resolved_at": self.resolved_at,
        }
        if self.build is not None:
            payload["build"] = self.build
        if self.checksum:
            payload["checksum"] = dict(self.checksum)
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ResolvedVersion:
        """Rebuild a resolution from its serialised form."""
        checksum = data.get("checksum")
        build = data.get("build")
        return cls(
            server_type=ServerType.parse(str(data["server_type"])),
            tag=str(data["tag"]),
            version=str(data["version"]),
            url=str(data["url"]),
            build=str(build) if build is not None else None,
            checksum={str(k): str(v) for k, v in checksum.items()}
            if isinstance(checksum, Mapping)
            else None,
            resolved_at=str(data.get("resolved_at") or now_iso()),
        )


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Declared configuration of one managed server."""

    name: str
    server_type: ServerType
    version: str = "LATEST"
    memory: str = "2G"
    port: int = 25565
    java_args: str | None = None
    loader_version: str | None = None
    extra_args: tuple[str, ...] = ()
    created_at: str = field(default_factory=now_iso)
    resolved: ResolvedVersion | None = None
    last_status: str | None = None
    last_started_at: str | None = None

    def with_updates(self, **changes: object) -> ServerConfig:
        """Return a copy with *changes* applied (the name is immutable)."""
        if "name" in changes and changes["name"] != self.name:
            raise ValueError("Server names are immutable once created.")
        return replace(self, **changes)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        """Return the mapping persisted in the registry file."""
        payload: dict[str, object] = {
            "name": self.name,
            "server_type": self.server_type.value,
            "version": self.version,
            "memory": self.memory,
            "port": self.port,
            "java_args": self.java_args,
            "loader_version": self.loader_version,
            "extra_args": list(self.extra_args),
            "created_at": self.created_at,
            "resolved": self.resolved.to_dict() if self.resolved else None,
            "last_status": self.last_status,
            "last_started_at": self.last_started_at,
        }
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ServerConfig:
        """Rebuild a config from a registry mapping."""
        name = str(data.get("name", "")).strip()
        if not name:
            raise ValueError("Server entry missing 'name'.")
        resolved_raw = data.get("resolved")
        extra_raw = data.get("extra_args") or []
        if isinstance(extra_raw, str):
            extra_raw = [extra_raw]
        return cls(
            name=name,
            server_type=ServerType.parse(str(data.get("server_type", ""))),
            version=str(data.get("version") or "LATEST"),
            memory=str(data.get("memory") or "2G"),
            port=int(data.get("port") or 25565),
            java_args=_optional_str(data.get("java_args")),
            loader_version=_optional_str(data.get("loader_version")),
            extra_args=tuple(str(item) for item in extra_raw),
            created_at=str(data.get("created_at") or now_iso()),
            resolved=ResolvedVersion.from_mapping(resolved_raw)
            if isinstance(resolved_raw, Mapping)
            else None,
            last_status=_optional_str(data.get("last_status")),
            last_started_at=_optional_str(data.get("last_started_at")),
        )


def validate_server_name(name: str) -> str:
    """Return *name* stripped, raising ``ValueError`` when it is not a safe key."""
    normalized = name.strip()
    if not normalized:
        raise ValueError("Server name must be a non-empty string.")
    if not SERVER_NAME_PATTERN.fullmatch(normalized):
        raise ValueError(
            f"Invalid server name '{name}': use letters, digits, '-' or '_' only."
        )
    return normalized


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


__all__ = [
    "LifecycleState",
    "ResolvedVersion",
    "RuntimeStatus",
    "SERVER_NAME_PATTERN",
    "SYMBOLIC_TAGS",
    "ServerConfig",
    "ServerType",
    "now_iso",
    "parse_iso",
    "validate_server_name",
]
