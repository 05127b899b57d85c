"""Capability interface between the orchestrator and a container runtime.

The orchestrator only ever talks to a :class:`ContainerDriver`. The Docker
implementation lives in :mod:`mcsctl.providers.docker_driver`; tests substitute
an in-memory fake with deterministic status transitions.
"""
from __future__ import annotations

import codecs
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import Protocol, runtime_checkable

from ..models import RuntimeStatus


MANAGED_LABEL = "io.mcsctl.managed"
SERVER_LABEL = "io.mcsctl.server"
TYPE_LABEL = "io.mcsctl.type"


class DriverError(RuntimeError):
    """Raised when the container runtime rejects or fails an operation.

    The runtime's own exception is always chained as ``__cause__``.
    """


class DriverUnavailableError(DriverError):
    """Raised when the container runtime cannot be reached at all."""


@dataclass(frozen=True, slots=True)
class VolumeMount:
    """Bind mount of a host directory into the container."""

    source: Path
    target: str
    read_only: bool = False


@dataclass(frozen=True, slots=True)
class ContainerSpec:
    """Everything needed to materialise one server container without starting it."""

    name: str
    image: str
    env: Mapping[str, str] = field(default_factory=dict)
    ports: Mapping[int, int] = field(default_factory=dict)
    volumes: tuple[VolumeMount, ...] = ()
    memory_limit: str | None = None
    restart_policy: str = "unless-stopped"
    stdin_open: bool = True
    tty: bool = True
    labels: Mapping[str, str] = field(default_factory=dict)
    command: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ContainerHandle:
    """Reference to a container by name (and id once known)."""

    name: str
    id: str | None = None


class LogStream:
    """Lazy, cancellable iterator of decoded log lines.

    *chunks* may yield ``bytes`` or ``str`` fragments of any size; they are
    reassembled into lines. :meth:`cancel` invokes *closer* so a blocked
    follow-mode read returns promptly, and iteration stops at the next chunk
    boundary.
    """

    def __init__(
        self,
        chunks: Iterable[bytes | str],
        closer: Callable[[], None] | None = None,
    ) -> None:
        """Wrap *chunks*; *closer* releases the underlying transport."""
        self._chunks = chunks
        self._closer = closer
        self._cancelled = threading.Event()
        self._closed = False

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop iteration and release the underlying stream."""
        self._cancelled.set()
        if self._closed:
            return
        self._closed = True
        if self._closer is not None:
            try:
                self._closer()
            except Exception:  # noqa: BLE001 - transport teardown errors are irrelevant
                pass

    def __iter__(self) -> Iterator[str]:
        """Yield complete lines without trailing newlines."""
        # Multibyte characters may straddle chunk boundaries.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        for chunk in self._chunks:
            if self._cancelled.is_set():
                return
            buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            while "\n" in buffer:
                line, buffer = buffer.split("\n", 1)
                yield line.removesuffix("\r")
                if self._cancelled.is_set():
                    return
        buffer += decoder.decode(b"", final=True)
        if buffer and not self._cancelled.is_set():
            yield buffer.removesuffix("\r")

    def __enter__(self) -> LogStream:
        """Return the stream for use in a ``with`` block."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Cancel the stream on exit."""
        self.cancel()


class ConsoleSession:
    """Interactive console attached to a running server."""

    def __init__(
        self,
        sender: Callable[[bytes], object],
        output: LogStream,
        closer: Callable[[], None] | None = None,
    ) -> None:
        """Bind the session to its input writer and output stream."""
        self._sender = sender
        self.output = output
        self._closer = closer
        self._closed = False

    def send(self, line: str) -> None:
        """Send one command line to the server console."""
        if self._closed:
            raise DriverError("Console session is closed.")
        self._sender((line.rstrip("\n") + "\n").encode("utf-8"))

    def __iter__(self) -> Iterator[str]:
        """Iterate console output lines."""
        return iter(self.output)

    def close(self) -> None:
        """Detach from the console; the server keeps running."""
        if self._closed:
            return
        self._closed = True
        self.output.cancel()
        if self._closer is not None:
            self._closer()

    def __enter__(self) -> ConsoleSession:
        """Return the session for use in a ``with`` block."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the session on exit."""
        self.close()


@runtime_checkable
class ContainerDriver(Protocol):
    """Operations the orchestrator may issue against the container runtime."""

    def handle_for(self, name: str) -> ContainerHandle:
        """Return the handle for the container backing server *name*."""

    def provision(self, spec: ContainerSpec) -> ContainerHandle:
        """Create (but do not start) the container described by *spec*."""

    def start(self, handle: ContainerHandle) -> None:
        """Start the container."""

    def stop(self, handle: ContainerHandle, timeout: float, *, force: bool = False) -> None:
        """Stop gracefully within *timeout* seconds, or kill when *force* is set."""

    def remove(self, handle: ContainerHandle) -> None:
        """Remove the container; a missing container is not an error."""

    def status(self, handle: ContainerHandle) -> RuntimeStatus:
        """Return the live status (``ABSENT`` when the container does not exist)."""

    def stream_logs(
        self,
        handle: ContainerHandle,
        *,
        follow: bool,
        tail: int | None = None,
    ) -> LogStream:
        """Return the container log as a lazy line stream."""

    def exec_interactive(self, handle: ContainerHandle) -> ConsoleSession:
        """Attach to the server console."""


__all__ = [
    "ConsoleSession",
    "ContainerDriver",
    "ContainerHandle",
    "ContainerSpec",
    "DriverError",
    "DriverUnavailableError",
    "LogStream",
    "MANAGED_LABEL",
    "SERVER_LABEL",
    "TYPE_LABEL",
    "VolumeMount",
]
