"""Docker implementation of :class:`~mcsctl.providers.container_driver.ContainerDriver`."""
from __future__ import annotations

import logging
import socket
from collections.abc import Iterator
from typing import Any

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from ..models import RuntimeStatus
from .container_driver import (
    ConsoleSession,
    ContainerHandle,
    ContainerSpec,
    DriverError,
    DriverUnavailableError,
    LogStream,
    MANAGED_LABEL,
)

LOGGER = logging.getLogger(__name__)

_STATUS_MAP = {
    "created": RuntimeStatus.CREATED,
    "running": RuntimeStatus.RUNNING,
    "restarting": RuntimeStatus.RUNNING,
    "paused": RuntimeStatus.RUNNING,
    "exited": RuntimeStatus.STOPPED,
    "dead": RuntimeStatus.ERROR,
    "removing": RuntimeStatus.ERROR,
}

# docker-py raises requests errors unwrapped when the daemon drops or stalls.
_DRIVER_ERRORS = (DockerException, requests.RequestException)


class DockerDriver:
    """Drive server containers through the Docker Engine API."""

    def __init__(
        self,
        *,
        name_prefix: str = "mc-",
        docker_host: str | None = None,
        client: docker.DockerClient | None = None,
    ) -> None:
        """Configure the driver; the Docker client is created on first use."""
        self.name_prefix = name_prefix
        self.docker_host = docker_host
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Return the Docker client, connecting lazily."""
        if self._client is None:
            try:
                if self.docker_host:
                    self._client = docker.DockerClient(base_url=self.docker_host)
                else:
                    self._client = docker.from_env()
                self._client.ping()
            except _DRIVER_ERRORS as exc:
                self._client = None
                raise DriverUnavailableError(f"Cannot connect to Docker: {exc}") from exc
        return self._client

    def container_name(self, server: str) -> str:
        """Return the container name used for *server*."""
        return f"{self.name_prefix}{server}"

    # ------------------------------------------------------------------
    def handle_for(self, name: str) -> ContainerHandle:
        """Return the handle for server *name* (the container may not exist)."""
        return ContainerHandle(name=self.container_name(name))

    def provision(self, spec: ContainerSpec) -> ContainerHandle:
        """Create the container for *spec*, pulling the image when missing."""
        kwargs: dict[str, Any] = {
            "name": spec.name,
            "environment": dict(spec.env),
            "ports": {f"{inner}/tcp": outer for inner, outer in spec.ports.items()},
            "volumes": {
                str(mount.source): {"bind": mount.target, "mode": "ro" if mount.read_only else "rw"}
                for mount in spec.volumes
            },
            "restart_policy": {"Name": spec.restart_policy},
            "stdin_open": spec.stdin_open,
            "tty": spec.tty,
            "labels": {MANAGED_LABEL: "true", **dict(spec.labels)},
            "detach": True,
        }
        if spec.memory_limit:
            kwargs["mem_limit"] = spec.memory_limit
        if spec.command:
            kwargs["command"] = list(spec.command)
        try:
            self._ensure_image(spec.image)
            container = self.client.containers.create(spec.image, **kwargs)
        except _DRIVER_ERRORS as exc:
            raise DriverError(f"Failed to create container {spec.name}: {exc}") from exc
        LOGGER.info("Provisioned container %s (%s)", spec.name, container.short_id)
        return ContainerHandle(name=spec.name, id=container.id)

    def start(self, handle: ContainerHandle) -> None:
        """Start the container."""
        container = self._get(handle)
        try:
            container.start()
        except _DRIVER_ERRORS as exc:
            raise DriverError(f"Failed to start {handle.name}: {exc}") from exc

    def stop(self, handle: ContainerHandle, timeout: float, *, force: bool = False) -> None:
        """Stop the container gracefully, or kill it when *force* is set."""
        container = self._get(handle)
        try:
            if force:
                container.kill()
            else:
                container.stop(timeout=max(1, int(timeout)))
        except _DRIVER_ERRORS as exc:
            if force and isinstance(exc, APIError) and exc.status_code == 409:
                return  # already stopped
            raise DriverError(f"Failed to stop {handle.name}: {exc}") from exc

    def remove(self, handle: ContainerHandle) -> None:
        """Remove the container; volumes are bind mounts and are left alone."""
        try:
            container = self.client.containers.get(handle.id or handle.name)
        except NotFound:
            return
        except _DRIVER_ERRORS as exc:
            raise DriverError(f"Failed to look up {handle.name}: {exc}") from exc
        try:
            container.remove(v=False)
        except NotFound:
            return
        except _DRIVER_ERRORS as exc:
            raise DriverError(f"Failed to remove {handle.name}: {exc}") from exc

    def status(self, handle: ContainerHandle) -> RuntimeStatus:
        """Return the live status of the container."""
        try:
            container = self.client.containers.get(handle.id or handle.name)
        except NotFound:
            return RuntimeStatus.ABSENT
        except _DRIVER_ERRORS as exc:
            raise DriverError(f"Failed to inspect {handle.name}: {exc}") from exc
        return _STATUS_MAP.get(str(container.status), RuntimeStatus.ERROR)

    def stream_logs(
        self,
        handle: ContainerHandle,
        *,
        follow: bool,
        tail: int | None = None,
    ) -> LogStream:
        """Return the container log as a lazy line stream."""
        container = self._get(handle)
        try:
            stream = container.logs(
                stream=True,
                follow=follow,
                stdout=True,
                stderr=True,
                tail=tail if tail is not None else "all",
            )
        except _DRIVER_ERRORS as exc:
            raise DriverError(f"Failed to read logs of {handle.name}: {exc}") from exc
        return LogStream(_guarded(stream, handle.name), closer=getattr(stream, "close", None))

    def exec_interactive(self, handle: ContainerHandle) -> ConsoleSession:
        """Attach to the server's stdin/stdout."""
        container = self._get(handle)
        try:
            attached = container.attach_socket(
                params={"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1, "logs": 0}
            )
        except _DRIVER_ERRORS as exc:
            raise DriverError(f"Failed to attach to {handle.name}: {exc}") from exc
        raw: socket.socket = getattr(attached, "_sock", attached)
        return ConsoleSession(
            sender=raw.sendall,
            output=LogStream(_recv_chunks(raw), closer=attached.close),
        )

    # ------------------------------------------------------------------
    def _get(self, handle: ContainerHandle) -> Any:
        try:
            return self.client.containers.get(handle.id or handle.name)
        except NotFound as exc:
            raise DriverError(f"Container {handle.name} does not exist.") from exc
        except _DRIVER_ERRORS as exc:
            raise DriverError(f"Failed to look up {handle.name}: {exc}") from exc

    def _ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
        except ImageNotFound:
            LOGGER.info("Pulling image %s", image)
            self.client.images.pull(image)


def _guarded(chunks: Iterator[bytes], name: str) -> Iterator[bytes]:
    try:
        yield from chunks
    except _DRIVER_ERRORS as exc:
        raise DriverError(f"Log stream of {name} failed: {exc}") from exc


def _recv_chunks(raw: socket.socket) -> Iterator[bytes]:
    while True:
        try:
            data = raw.recv(4096)
        except OSError:
            return
        if not data:
            return
        yield data


__all__ = ["DockerDriver"]
