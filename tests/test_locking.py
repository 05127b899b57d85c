"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from mcsctl.locking import LockManager, LockTimeoutError


def test_server_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "servers" / "alpha.lock"
    with manager.server_lock("alpha") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.server_lock("alpha", timeout=0.2):
        pass


def test_server_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.server_lock("alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.server_lock("alpha", timeout=0.1):
                pass


def test_different_servers_do_not_contend(tmp_path: Path) -> None:
    """Locks for distinct servers can be held at the same time."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.server_lock("alpha"):
        with manager.server_lock("bravo", timeout=0.1) as handle:
            assert handle.path.name == "bravo.lock"


def test_lock_excludes_other_threads(tmp_path: Path) -> None:
    """A lock held by one thread blocks another thread in the same process."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    outcome: list[str] = []

    def contender() -> None:
        try:
            with manager.server_lock("alpha", timeout=0.1):
                outcome.append("acquired")
        except LockTimeoutError:
            outcome.append("timeout")

    with manager.server_lock("alpha"):
        worker = threading.Thread(target=contender)
        worker.start()
        worker.join()

    assert outcome == ["timeout"]
