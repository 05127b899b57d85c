"""File-based locking primitives serialising per-server operations.

Locks are ``flock`` locks on files under the runtime directory, one per
server: ``<runtime_dir>/servers/<name>.lock``.

Each lock file records the holder's pid, hostname and acquisition time for
diagnostics. The files persist after release; only the kernel lock matters.
``flock`` locks belong to the open file description, so two acquisitions from
threads of the same process still exclude each other.
"""
from __future__ import annotations

import fcntl
import json
import os
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .models import now_iso

_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and how long the caller waited for it."""

    path: Path
    wait_ms: int


class LockManager:
    """Hand out per-server locks rooted at *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Initialise the manager; directories are created lazily."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def server_lock_path(self, name: str) -> Path:
        """Return the lock file path for server *name*."""
        return self.runtime_dir / "servers" / f"{name}.lock"

    @contextmanager
    def server_lock(self, name: str, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for server *name* for the duration of the block."""
        with self._acquire(self.server_lock_path(name), timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "acquired_at": now_iso(),
        "path": str(path),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
