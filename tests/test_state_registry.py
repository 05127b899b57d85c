"""Server registry tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from mcsctl.models import ResolvedVersion, ServerConfig, ServerType
from mcsctl.state import (
    DuplicateNameError,
    ServerNotFoundError,
    ServerRegistry,
    StateRegistryError,
)


def _config(name: str, **extra: object) -> ServerConfig:
    return ServerConfig(name=name, server_type=ServerType.PAPER, **extra)  # type: ignore[arg-type]


def test_missing_file_lists_nothing(tmp_path: Path) -> None:
    """A registry without a backing file is empty."""
    registry = ServerRegistry(tmp_path / "servers.yml")

    assert registry.list() == []
    assert registry.read() == {"servers": []}
    assert registry.contains("alpha") is False


def test_create_and_get_roundtrip(tmp_path: Path) -> None:
    """Created entries persist with restrictive permissions."""
    path = tmp_path / "state" / "servers.yml"
    registry = ServerRegistry(path)
    resolved = ResolvedVersion(
        server_type=ServerType.PAPER,
        tag="LATEST",
        version="1.21.4",
        url="https://jars.test/paper.jar",
        build="120",
    )

    registry.create(_config("alpha", port=25566, resolved=resolved, extra_args=("--nogui",)))

    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o640

    reloaded = ServerRegistry(path).get("alpha")
    assert reloaded.port == 25566
    assert reloaded.resolved is not None
    assert reloaded.resolved.build == "120"
    assert reloaded.extra_args == ("--nogui",)


def test_list_preserves_creation_order(tmp_path: Path) -> None:
    """Servers are listed in the order they were created."""
    registry = ServerRegistry(tmp_path / "servers.yml")
    for name in ("charlie", "alpha", "bravo"):
        registry.create(_config(name))

    assert [config.name for config in registry.list()] == ["charlie", "alpha", "bravo"]


def test_duplicate_names_rejected(tmp_path: Path) -> None:
    """A second create with the same name leaves the registry unchanged."""
    registry = ServerRegistry(tmp_path / "servers.yml")
    registry.create(_config("alpha", port=25565))

    with pytest.raises(DuplicateNameError):
        registry.create(_config("alpha", port=30000))

    assert len(registry.list()) == 1
    assert registry.get("alpha").port == 25565


def test_update_applies_mutator(tmp_path: Path) -> None:
    """Updates replace the entry in place."""
    registry = ServerRegistry(tmp_path / "servers.yml")
    registry.create(_config("alpha"))

    updated = registry.update("alpha", lambda config: config.with_updates(last_status="RUNNING"))

    assert updated.last_status == "RUNNING"
    assert registry.get("alpha").last_status == "RUNNING"


def test_update_rejects_renames(tmp_path: Path) -> None:
    """Names are immutable once created."""
    registry = ServerRegistry(tmp_path / "servers.yml")
    registry.create(_config("alpha"))

    with pytest.raises(ValueError):
        registry.update("alpha", lambda config: config.with_updates(name="beta"))


def test_missing_entries_raise(tmp_path: Path) -> None:
    """Lookups, updates and removals of unknown names raise ServerNotFoundError."""
    registry = ServerRegistry(tmp_path / "servers.yml")

    with pytest.raises(ServerNotFoundError):
        registry.get("ghost")
    with pytest.raises(ServerNotFoundError):
        registry.update("ghost", lambda config: config)
    with pytest.raises(ServerNotFoundError):
        registry.remove("ghost")


def test_remove_returns_entry(tmp_path: Path) -> None:
    """Removing an entry returns it and drops it from the file."""
    registry = ServerRegistry(tmp_path / "servers.yml")
    registry.create(_config("alpha"))
    registry.create(_config("bravo"))

    removed = registry.remove("alpha")

    assert removed.name == "alpha"
    assert [config.name for config in registry.list()] == ["bravo"]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    path = tmp_path / "servers.yml"
    path.write_text("::: not yaml :::\n")

    with pytest.raises(StateRegistryError):
        ServerRegistry(path).list()


def test_malformed_entry_raises(tmp_path: Path) -> None:
    """Entries with unknown server types are reported, not skipped."""
    path = tmp_path / "servers.yml"
    path.write_text("servers:\n  - name: alpha\n    server_type: BUKKIT\n")

    with pytest.raises(StateRegistryError, match="entry #0"):
        ServerRegistry(path).list()


def test_failed_write_keeps_previous_document(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failing rename leaves the last good registry on disk."""
    path = tmp_path / "servers.yml"
    registry = ServerRegistry(path)
    registry.create(_config("alpha"))
    before = path.read_text()

    def fail_replace(src: object, dst: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("mcsctl.state.registry.os.replace", fail_replace)

    with pytest.raises(StateRegistryError):
        registry.create(_config("bravo"))

    assert path.read_text() == before
    assert not [item for item in tmp_path.iterdir() if item.name.startswith(".servers.yml.")]
