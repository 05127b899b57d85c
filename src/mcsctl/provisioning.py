"""Translate a :class:`~mcsctl.models.ServerConfig` into a container spec.

Servers run on the ``itzg/minecraft-server`` image, which is configured
entirely through environment variables. Every server type contributes its own
variables (build pins, loader versions) through :data:`TYPE_ENV`.
"""
from __future__ import annotations

import re
from collections.abc import Callable
from pathlib import Path

from .config import ContainerConfig
from .models import ServerConfig, ServerType
from .providers.container_driver import (
    SERVER_LABEL,
    TYPE_LABEL,
    ContainerSpec,
    VolumeMount,
)

GAME_PORT = 25565
DATA_MOUNT = "/data"
MEMORY_PATTERN = re.compile(r"^(?P<amount>[1-9]\d*)(?P<unit>[MG])$", re.IGNORECASE)

# Container limit headroom over the JVM heap for metaspace, threads and buffers.
_MEMORY_OVERHEAD = 1.25


def parse_memory(value: str) -> int:
    """Return *value* (``512M``, ``2G``...) in mebibytes, raising ``ValueError``."""
    match = MEMORY_PATTERN.fullmatch(value.strip())
    if match is None:
        raise ValueError(f"Invalid memory size '{value}': use a number followed by M or G.")
    amount = int(match.group("amount"))
    return amount * 1024 if match.group("unit").upper() == "G" else amount


def container_memory_limit(memory: str) -> str:
    """Return the container memory limit for a JVM heap of *memory*."""
    return f"{int(parse_memory(memory) * _MEMORY_OVERHEAD)}m"


def _paper_env(config: ServerConfig, build: str | None) -> dict[str, str]:
    return {"PAPER_BUILD": build} if build else {}


def _purpur_env(config: ServerConfig, build: str | None) -> dict[str, str]:
    return {"PURPUR_BUILD": build} if build else {}


def _forge_env(config: ServerConfig, build: str | None) -> dict[str, str]:
    return {"FORGE_VERSION": build} if build else {}


def _fabric_env(config: ServerConfig, build: str | None) -> dict[str, str]:
    return {"FABRIC_LOADER_VERSION": build} if build else {}


def _no_env(config: ServerConfig, build: str | None) -> dict[str, str]:
    return {}


TYPE_ENV: dict[ServerType, Callable[[ServerConfig, str | None], dict[str, str]]] = {
    ServerType.VANILLA: _no_env,
    ServerType.PAPER: _paper_env,
    ServerType.PURPUR: _purpur_env,
    ServerType.FORGE: _forge_env,
    ServerType.FABRIC: _fabric_env,
    ServerType.SPIGOT: _no_env,
}


def build_environment(config: ServerConfig) -> dict[str, str]:
    """Return the image environment for *config*.

    The pinned resolution wins over the requested tag so a symbolic tag never
    drifts between container recreations. An explicit ``loader_version``
    overrides the resolved build.
    """
    resolved = config.resolved
    version = resolved.version if resolved else config.version
    env = {
        "EULA": "TRUE",
        "TYPE": config.server_type.value,
        "VERSION": version,
        "MEMORY": config.memory,
    }
    build = config.loader_version or (resolved.build if resolved else None)
    env.update(TYPE_ENV[config.server_type](config, build))
    if config.java_args:
        env["JVM_OPTS"] = config.java_args
    if config.extra_args:
        env["EXTRA_ARGS"] = " ".join(config.extra_args)
    return env


def build_container_spec(
    config: ServerConfig,
    *,
    container_name: str,
    data_dir: Path,
    settings: ContainerConfig,
) -> ContainerSpec:
    """Return the :class:`ContainerSpec` that provisions *config*."""
    return ContainerSpec(
        name=container_name,
        image=settings.image,
        env=build_environment(config),
        ports={GAME_PORT: config.port},
        volumes=(VolumeMount(source=data_dir, target=DATA_MOUNT),),
        memory_limit=container_memory_limit(config.memory),
        restart_policy=settings.restart_policy,
        stdin_open=True,
        tty=True,
        labels={SERVER_LABEL: config.name, TYPE_LABEL: config.server_type.value},
    )


__all__ = [
    "DATA_MOUNT",
    "GAME_PORT",
    "MEMORY_PATTERN",
    "TYPE_ENV",
    "build_container_spec",
    "build_environment",
    "container_memory_limit",
    "parse_memory",
]
