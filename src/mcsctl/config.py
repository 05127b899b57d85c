"""Configuration loader for mcsctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``<base_dir>/config.yml`` (or an override path).
3. Environment variables prefixed with ``MCSCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MCSCTL_BASE_DIR=/srv/minecraft
    export MCSCTL_CONTAINER__STOP_TIMEOUT=120
    export MCSCTL_RESOLVER__MANIFESTS__PAPER=https://mirror.example/paper

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. Paths left unset are derived from ``base_dir``. The
resulting configuration is exposed as immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load mcsctl configuration. Install with "
        "`pip install mcsctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .models import ServerType

ENV_PREFIX = "MCSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_BASE_DIR = "~/.mc-servers"

DEFAULT_MANIFESTS: dict[str, str] = {
    "vanilla": "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json",
    "paper": "https://api.papermc.io/v2/projects/paper",
    "purpur": "https://api.purpurmc.org/v2/purpur",
    "fabric": "https://meta.fabricmc.net/v2/versions",
    "forge": "https://files.minecraftforge.net/net/minecraftforge/forge/promotions_slim.json",
    "spigot": "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and compression defaults."""

    root: Path
    index: Path
    compression: str = "gzip"
    compression_level: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "compression": {
                "algorithm": self.compression,
                "level": self.compression_level,
            },
        }


@dataclass(frozen=True)
class ResolverConfig:
    """Upstream manifest endpoints and cache policy for version resolution."""

    cache_file: Path
    staleness_hours: float = 24.0
    timeout: float = 15.0
    manifests: Mapping[ServerType, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cache_file": str(self.cache_file),
            "staleness_hours": self.staleness_hours,
            "timeout": self.timeout,
            "manifests": {key.value.lower(): value for key, value in self.manifests.items()},
        }


@dataclass(frozen=True)
class ContainerConfig:
    """Container image and runtime policy used for provisioning."""

    image: str = "itzg/minecraft-server"
    name_prefix: str = "mc-"
    stop_timeout: float = 60.0
    restart_policy: str = "unless-stopped"
    docker_host: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "image": self.image,
            "name_prefix": self.name_prefix,
            "stop_timeout": self.stop_timeout,
            "restart_policy": self.restart_policy,
            "docker_host": self.docker_host,
        }


@dataclass(frozen=True)
class HealthConfig:
    """Bounded backoff parameters for start/stop confirmation polling."""

    initial_delay: float = 0.5
    max_delay: float = 5.0
    multiplier: float = 2.0
    start_timeout: float = 90.0
    stop_grace: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "multiplier": self.multiplier,
            "start_timeout": self.start_timeout,
            "stop_grace": self.stop_grace,
        }


@dataclass(frozen=True)
class ServerDefaults:
    """Defaults applied to ``create`` when options are omitted."""

    memory: str = "2G"
    port: int = 25565
    version: str = "LATEST"
    java_args: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "memory": self.memory,
            "port": self.port,
            "version": self.version,
            "java_args": self.java_args,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for mcsctl."""

    config_file: Path
    base_dir: Path
    registry_file: Path
    servers_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    backups: BackupConfig
    resolver: ResolverConfig
    container: ContainerConfig
    health: HealthConfig
    defaults: ServerDefaults

    def data_dir(self, name: str) -> Path:
        """Return the persistent data directory for server *name*."""
        return self.servers_dir / name / "data"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "base_dir": str(self.base_dir),
            "registry_file": str(self.registry_file),
            "servers_dir": str(self.servers_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "backups": self.backups.to_dict(),
            "resolver": self.resolver.to_dict(),
            "container": self.container.to_dict(),
            "health": self.health.to_dict(),
            "defaults": self.defaults.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": None,  # derived from base_dir when absent
    "base_dir": DEFAULT_BASE_DIR,
    "registry_file": None,
    "servers_dir": None,
    "logs_dir": None,
    "runtime_dir": None,
    "lock_timeout": 30.0,
    "backups": {
        "root": None,
        "index": None,
        "compression": {
            "algorithm": "gzip",
            "level": None,
        },
    },
    "resolver": {
        "cache_file": None,
        "staleness_hours": 24.0,
        "timeout": 15.0,
        "manifests": {},
    },
    "container": {
        "image": "itzg/minecraft-server",
        "name_prefix": "mc-",
        "stop_timeout": 60.0,
        "restart_policy": "unless-stopped",
        "docker_host": None,
    },
    "health": {
        "initial_delay": 0.5,
        "max_delay": 5.0,
        "multiplier": 2.0,
        "start_timeout": 90.0,
        "stop_grace": 30.0,
    },
    "defaults": {
        "memory": "2G",
        "port": 25565,
        "version": "LATEST",
        "java_args": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_BACKUP_COMPRESSION = {"gzip", "bzip2", "xz", "none"}
ALLOWED_RESTART_POLICIES = {"no", "always", "unless-stopped", "on-failure"}
_SECTION_KEYS: dict[str, set[str]] = {
    "backups": {"root", "index", "compression"},
    "resolver": {"cache_file", "staleness_hours", "timeout", "manifests"},
    "container": {"image", "name_prefix", "stop_timeout", "restart_policy", "docker_host"},
    "health": {"initial_delay", "max_delay", "multiplier", "start_timeout", "stop_grace"},
    "defaults": {"memory", "port", "version", "java_args"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    env_values = _build_env_overrides(resolved_env)
    base_hint = env_values.get("base_dir") or merged["base_dir"]
    config_path = _determine_config_path(base_hint, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    base_dir: object,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return _to_path(base_dir) / "config.yml"


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    compression_map = _as_dict(backups_map.get("compression"), "backups.compression")
    unknown_comp = set(compression_map.keys()) - {"algorithm", "level"}
    if unknown_comp:
        joined = ", ".join(sorted(unknown_comp))
        raise ConfigError(f"Unknown backups compression keys: {joined}.")
    algorithm = str(compression_map.get("algorithm", "gzip"))
    if algorithm not in ALLOWED_BACKUP_COMPRESSION:
        allowed = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
        raise ConfigError(f"Unsupported backup compression '{algorithm}'. Allowed: {allowed}.")

    resolver_map = _as_dict(raw.get("resolver"), "resolver")
    manifests = _as_dict(resolver_map.get("manifests"), "resolver.manifests")
    known_types = {member.value.lower() for member in ServerType}
    unknown_types = {key.lower() for key in manifests} - known_types
    if unknown_types:
        joined = ", ".join(sorted(unknown_types))
        raise ConfigError(f"Unknown server types in resolver.manifests: {joined}.")

    container_map = _as_dict(raw.get("container"), "container")
    policy = container_map.get("restart_policy")
    if policy is not None and str(policy) not in ALLOWED_RESTART_POLICIES:
        allowed = ", ".join(sorted(ALLOWED_RESTART_POLICIES))
        raise ConfigError(f"Unsupported restart policy '{policy}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    base_dir = _to_path(raw.get("base_dir"))
    config_file = _to_path(raw.get("config_file"))

    registry_file = _derived_path(raw.get("registry_file"), base_dir / "servers.yml")
    servers_dir = _derived_path(raw.get("servers_dir"), base_dir / "servers")
    logs_dir = _derived_path(raw.get("logs_dir"), base_dir / "logs")
    runtime_dir = _derived_path(raw.get("runtime_dir"), base_dir / "run")
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _derived_path(backups_mapping.get("root"), base_dir / "backups")
    backups_index = _derived_path(backups_mapping.get("index"), backups_root / "backups.json")
    compression_mapping = _as_dict(backups_mapping.get("compression"), "backups.compression")
    compression_level_raw = compression_mapping.get("level")
    compression_level: int | None = None
    if compression_level_raw is not None:
        compression_level = _expect_int(
            compression_level_raw, "backups.compression.level", default=6
        )
        if not 1 <= compression_level <= 9:
            raise ConfigError("backups.compression.level must be between 1 and 9.")
    backups = BackupConfig(
        root=backups_root,
        index=backups_index,
        compression=str(compression_mapping.get("algorithm", "gzip")),
        compression_level=compression_level,
    )

    resolver_mapping = _as_dict(raw.get("resolver"), "resolver")
    manifests_mapping = _as_dict(resolver_mapping.get("manifests"), "resolver.manifests")
    manifests: dict[ServerType, str] = {}
    for key, value in manifests_mapping.items():
        if value in (None, ""):
            continue
        manifests[ServerType.parse(key)] = str(value).rstrip("/")
    resolver = ResolverConfig(
        cache_file=_derived_path(resolver_mapping.get("cache_file"), base_dir / "versions.json"),
        staleness_hours=_expect_positive_float(
            resolver_mapping.get("staleness_hours"), "resolver.staleness_hours", default=24.0
        ),
        timeout=_expect_positive_float(
            resolver_mapping.get("timeout"), "resolver.timeout", default=15.0
        ),
        manifests=manifests,
    )

    container_mapping = _as_dict(raw.get("container"), "container")
    docker_host = container_mapping.get("docker_host")
    container = ContainerConfig(
        image=str(container_mapping.get("image") or "itzg/minecraft-server"),
        name_prefix=str(container_mapping.get("name_prefix") or "mc-"),
        stop_timeout=_expect_positive_float(
            container_mapping.get("stop_timeout"), "container.stop_timeout", default=60.0
        ),
        restart_policy=str(container_mapping.get("restart_policy") or "unless-stopped"),
        docker_host=str(docker_host) if docker_host else None,
    )

    health_mapping = _as_dict(raw.get("health"), "health")
    health = HealthConfig(
        initial_delay=_expect_positive_float(
            health_mapping.get("initial_delay"), "health.initial_delay", default=0.5
        ),
        max_delay=_expect_positive_float(
            health_mapping.get("max_delay"), "health.max_delay", default=5.0
        ),
        multiplier=_expect_positive_float(
            health_mapping.get("multiplier"), "health.multiplier", default=2.0
        ),
        start_timeout=_expect_positive_float(
            health_mapping.get("start_timeout"), "health.start_timeout", default=90.0
        ),
        stop_grace=_expect_positive_float(
            health_mapping.get("stop_grace"), "health.stop_grace", default=30.0
        ),
    )
    if health.multiplier < 1:
        raise ConfigError("health.multiplier must be at least 1.")

    defaults_mapping = _as_dict(raw.get("defaults"), "defaults")
    port = _expect_int(defaults_mapping.get("port"), "defaults.port", default=25565)
    if not 1 <= port <= 65535:
        raise ConfigError(f"defaults.port must be between 1 and 65535. Got {port}.")
    java_args = defaults_mapping.get("java_args")
    defaults = ServerDefaults(
        memory=str(defaults_mapping.get("memory") or "2G"),
        port=port,
        version=str(defaults_mapping.get("version") or "LATEST"),
        java_args=str(java_args) if java_args else None,
    )

    return AppConfig(
        config_file=config_file,
        base_dir=base_dir,
        registry_file=registry_file,
        servers_dir=servers_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        backups=backups,
        resolver=resolver,
        container=container,
        health=health,
        defaults=defaults,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _derived_path(value: object, default: Path) -> Path:
    if value in (None, ""):
        return default
    return _to_path(value)


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ALLOWED_BACKUP_COMPRESSION",
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "ContainerConfig",
    "DEFAULT_MANIFESTS",
    "HealthConfig",
    "ResolverConfig",
    "ServerDefaults",
    "load_config",
]
