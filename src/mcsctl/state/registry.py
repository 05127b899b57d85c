"""Durable server registry backed by a single YAML document.

The registry file (``~/.mc-servers/servers.yml`` by default) maps every managed
server name to its declared :class:`~mcsctl.models.ServerConfig`. The document
is always read wholesale and rewritten wholesale through a temporary file that
is fsync'd and atomically renamed over the previous version, so a crash in the
middle of a write leaves the last valid registry in place.

Mutations are serialised inside a single process through one re-entrant lock.
Concurrent writers in separate processes are not coordinated.
"""
from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage mcsctl state. Install with `pip install mcsctl`."
    ) from exc

from ..models import ServerConfig


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


class DuplicateNameError(StateRegistryError):
    """Raised when creating a server whose name is already registered."""

    def __init__(self, name: str) -> None:
        """Record the conflicting *name*."""
        super().__init__(f"Server '{name}' already exists.")
        self.name = name


class ServerNotFoundError(StateRegistryError):
    """Raised when a server name is not present in the registry."""

    def __init__(self, name: str) -> None:
        """Record the missing *name*."""
        super().__init__(f"Server '{name}' not found in registry.")
        self.name = name


@dataclass
class ServerRegistry:
    """High-level interface to ``servers.yml``."""

    path: Path
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def __post_init__(self) -> None:
        """Normalise the registry path after initialisation."""
        self.path = self.path.expanduser()

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def list(self) -> list[ServerConfig]:
        """Return every registered server in creation order."""
        with self._lock:
            return self._load()

    def get(self, name: str) -> ServerConfig:
        """Return the config registered under *name*."""
        with self._lock:
            for config in self._load():
                if config.name == name:
                    return config
        raise ServerNotFoundError(name)

    def contains(self, name: str) -> bool:
        """Return ``True`` when *name* is registered."""
        with self._lock:
            return any(config.name == name for config in self._load())

    def create(self, config: ServerConfig) -> ServerConfig:
        """Append *config* to the registry, refusing duplicate names."""
        with self._lock:
            configs = self._load()
            if any(existing.name == config.name for existing in configs):
                raise DuplicateNameError(config.name)
            configs.append(config)
            self._store(configs)
        return config

    def update(
        self,
        name: str,
        mutator: Callable[[ServerConfig], ServerConfig],
    ) -> ServerConfig:
        """Apply *mutator* to the entry for *name* and persist the result."""
        with self._lock:
            configs = self._load()
            for index, existing in enumerate(configs):
                if existing.name != name:
                    continue
                updated = mutator(existing)
                if not isinstance(updated, ServerConfig):
                    raise StateRegistryError("Registry mutators must return a ServerConfig.")
                if updated.name != name:
                    raise StateRegistryError("Server names are immutable once created.")
                configs[index] = updated
                self._store(configs)
                return updated
        raise ServerNotFoundError(name)

    def remove(self, name: str) -> ServerConfig:
        """Remove *name* from the registry and return the removed config."""
        with self._lock:
            configs = self._load()
            remaining = [config for config in configs if config.name != name]
            if len(remaining) == len(configs):
                raise ServerNotFoundError(name)
            removed = next(config for config in configs if config.name == name)
            self._store(remaining)
        return removed

    # ------------------------------------------------------------------
    # File handling
    # ------------------------------------------------------------------
    def read(self) -> Mapping[str, object]:
        """Return the raw registry document (empty structure when missing)."""
        if not self.path.exists():
            return {"servers": []}
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {self.path}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(f"Failed to read registry file {self.path}: {exc}") from exc
        if data is None:
            return {"servers": []}
        if not isinstance(data, Mapping):
            raise StateRegistryError(f"Registry file {self.path} must contain a mapping.")
        return data

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the registry file."""
        self.ensure_root()
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.path.parent),
            prefix=f".{self.path.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o640)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry file {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def _load(self) -> list[ServerConfig]:
        raw_entries = self.read().get("servers", [])
        if not isinstance(raw_entries, list):
            raise StateRegistryError(f"Registry file {self.path} has a malformed 'servers' list.")
        configs: list[ServerConfig] = []
        for index, entry in enumerate(raw_entries):
            if not isinstance(entry, Mapping):
                raise StateRegistryError(f"Registry entry #{index} is not a mapping.")
            try:
                configs.append(ServerConfig.from_mapping(entry))
            except (KeyError, TypeError, ValueError) as exc:
                raise StateRegistryError(f"Registry entry #{index} is invalid: {exc}") from exc
        return configs

    def _store(self, configs: list[ServerConfig]) -> None:
        self.write({"servers": [config.to_dict() for config in configs]})


__all__ = [
    "DuplicateNameError",
    "ServerNotFoundError",
    "ServerRegistry",
    "StateRegistryError",
]
