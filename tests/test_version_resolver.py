"""Version resolution tests against canned manifests."""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mcsctl.models import ServerType
from mcsctl.providers.version_resolver import (
    FORGE_MAVEN,
    SPIGOT_DESCRIPTORS,
    UnknownVersionError,
    VersionResolver,
    VersionUnavailableError,
    is_prerelease,
    normalize_tag,
)

from conftest import FABRIC_URL, FORGE_URL, PAPER_URL, PURPUR_URL, VANILLA_URL, FakeManifests

NOON = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


class MutableClock:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


def _resolver(tmp_path: Path, fetch: FakeManifests, clock: MutableClock) -> VersionResolver:
    resolver = VersionResolver(
        cache_path=tmp_path / "versions.json",
        staleness=timedelta(hours=24),
        clock=clock,
    )
    resolver._fetch_json = fetch  # type: ignore[method-assign]
    return resolver


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("1.21.4", False),
        ("25w02a", True),
        ("1.21.5-pre1", True),
        ("1.21-rc2", True),
        ("47.3.0", False),
    ],
)
def test_is_prerelease(value: str, expected: bool) -> None:
    """Snapshots, pre-releases and release candidates are recognised."""
    assert is_prerelease(value) is expected


def test_normalize_tag() -> None:
    """Symbolic tags are case-insensitive; empty tags are rejected."""
    assert normalize_tag("latest") == "LATEST"
    assert normalize_tag(" Snapshot ") == "SNAPSHOT"
    assert normalize_tag("1.21.4") == "1.21.4"
    with pytest.raises(UnknownVersionError):
        normalize_tag("  ")


def test_vanilla_tags(resolver: VersionResolver) -> None:
    """LATEST, SNAPSHOT and explicit ids resolve through the Mojang manifest."""
    latest = resolver.resolve(ServerType.VANILLA, "LATEST")
    snapshot = resolver.resolve(ServerType.VANILLA, "snapshot")
    explicit = resolver.resolve("vanilla", "1.21.3")

    assert (latest.version, latest.url) == ("1.21.4", "https://jars.test/1.21.4.jar")
    assert latest.checksum == {"algorithm": "sha1", "value": "bbb"}
    assert snapshot.version == "25w02a"
    assert snapshot.tag == "SNAPSHOT"
    assert explicit.version == "1.21.3"
    assert explicit.resolved_at == "2025-01-15T12:00:00Z"


def test_unknown_explicit_version_never_falls_back(resolver: VersionResolver) -> None:
    """A version absent from the manifest is an error, not a substitution."""
    with pytest.raises(UnknownVersionError):
        resolver.resolve(ServerType.VANILLA, "1.99.9")
    with pytest.raises(UnknownVersionError):
        resolver.resolve(ServerType.PAPER, "1.99.9")


def test_paper_picks_newest_stable_build(resolver: VersionResolver) -> None:
    """Paper LATEST skips pre-releases and experimental builds."""
    resolved = resolver.resolve(ServerType.PAPER, "LATEST")

    assert resolved.version == "1.21.4"
    assert resolved.build == "120"
    assert resolved.url == (
        f"{PAPER_URL}/versions/1.21.4/builds/120/downloads/paper-1.21.4-120.jar"
    )
    assert resolved.checksum == {"algorithm": "sha256", "value": "e2"}


def test_purpur_latest_build(resolver: VersionResolver) -> None:
    """Purpur resolves the latest build and its md5."""
    resolved = resolver.resolve(ServerType.PURPUR, "LATEST")

    assert resolved.version == "1.21.4"
    assert resolved.build == "2400"
    assert resolved.url == f"{PURPUR_URL}/1.21.4/2400/download"
    assert resolved.checksum == {"algorithm": "md5", "value": "deadbeef"}


def test_fabric_uses_stable_game_and_loader(resolver: VersionResolver) -> None:
    """Fabric LATEST pairs the newest stable game version with a stable loader."""
    resolved = resolver.resolve(ServerType.FABRIC, "LATEST")

    assert resolved.version == "1.21.4"
    assert resolved.build == "0.16.10"
    assert resolved.url == f"{FABRIC_URL}/loader/1.21.4/0.16.10/1.0.1/server/jar"


def test_forge_recommended_and_latest(resolver: VersionResolver) -> None:
    """LATEST uses recommended promotions; SNAPSHOT the newest latest build."""
    latest = resolver.resolve(ServerType.FORGE, "LATEST")
    snapshot = resolver.resolve(ServerType.FORGE, "SNAPSHOT")
    explicit = resolver.resolve(ServerType.FORGE, "1.20.1")

    assert (latest.version, latest.build) == ("1.20.1", "47.3.0")
    assert latest.url == f"{FORGE_MAVEN}/1.20.1-47.3.0/forge-1.20.1-47.3.0-installer.jar"
    assert (snapshot.version, snapshot.build) == ("1.21.4", "54.0.26")
    assert explicit.build == "47.3.0"
    with pytest.raises(UnknownVersionError):
        resolver.resolve(ServerType.FORGE, "1.8.9")


def test_spigot_targets_releases(resolver: VersionResolver) -> None:
    """Spigot resolves Mojang releases only and points at BuildTools descriptors."""
    resolved = resolver.resolve(ServerType.SPIGOT, "LATEST")

    assert resolved.version == "1.21.4"
    assert resolved.url == f"{SPIGOT_DESCRIPTORS}/1.21.4.json"
    with pytest.raises(UnknownVersionError):
        resolver.resolve(ServerType.SPIGOT, "25w02a")


def test_session_cache_avoids_refetch(resolver: VersionResolver, manifests: FakeManifests) -> None:
    """A second resolution in the same session does not touch the network."""
    first = resolver.resolve(ServerType.PAPER, "LATEST")
    calls = len(manifests.calls)

    second = resolver.resolve(ServerType.PAPER, "latest")

    assert second == first
    assert len(manifests.calls) == calls


def test_fresh_bypasses_session_cache(
    resolver: VersionResolver,
    manifests: FakeManifests,
) -> None:
    """``fresh=True`` always re-reads the manifest."""
    resolver.resolve(ServerType.VANILLA, "LATEST")
    calls = len(manifests.calls)

    resolver.resolve(ServerType.VANILLA, "LATEST", fresh=True)

    assert len(manifests.calls) > calls


def test_successful_resolution_is_persisted(tmp_path: Path) -> None:
    """Resolutions are written to the cache file keyed by type and tag."""
    resolver = _resolver(tmp_path, FakeManifests(), MutableClock(NOON))

    resolver.resolve(ServerType.PAPER, "LATEST")

    data = json.loads((tmp_path / "versions.json").read_text())
    assert data["resolutions"]["PAPER:LATEST"]["build"] == "120"


def test_offline_falls_back_to_recent_cache(tmp_path: Path) -> None:
    """An unreachable upstream uses a cached resolution inside the window."""
    clock = MutableClock(NOON)
    _resolver(tmp_path, FakeManifests(), clock).resolve(ServerType.PAPER, "LATEST")

    clock.moment = NOON + timedelta(hours=20)
    offline = FakeManifests(offline=True)
    resolved = _resolver(tmp_path, offline, clock).resolve(ServerType.PAPER, "LATEST")

    assert resolved.build == "120"
    assert resolved.resolved_at == "2025-01-15T12:00:00Z"
    assert offline.calls


def test_offline_with_stale_cache_raises(tmp_path: Path) -> None:
    """Cached resolutions older than the window are not used."""
    clock = MutableClock(NOON)
    _resolver(tmp_path, FakeManifests(), clock).resolve(ServerType.PAPER, "LATEST")

    clock.moment = NOON + timedelta(hours=25)
    offline = _resolver(tmp_path, FakeManifests(offline=True), clock)

    with pytest.raises(VersionUnavailableError):
        offline.resolve(ServerType.PAPER, "LATEST")


def test_offline_without_cache_raises(tmp_path: Path) -> None:
    """With nothing cached an unreachable upstream is an error."""
    resolver = _resolver(tmp_path, FakeManifests(offline=True), MutableClock(NOON))

    with pytest.raises(VersionUnavailableError):
        resolver.resolve(ServerType.VANILLA, "LATEST")


def test_unreadable_cache_is_ignored(tmp_path: Path) -> None:
    """A corrupt cache file does not block online resolution."""
    (tmp_path / "versions.json").write_text("{broken")
    resolver = _resolver(tmp_path, FakeManifests(), MutableClock(NOON))

    resolved = resolver.resolve(ServerType.VANILLA, "LATEST")

    assert resolved.version == "1.21.4"
    assert "VANILLA:LATEST" in json.loads((tmp_path / "versions.json").read_text())["resolutions"]


def test_available_versions(resolver: VersionResolver) -> None:
    """Listings are newest first and hide snapshots unless asked."""
    assert resolver.available_versions(ServerType.VANILLA) == ["1.21.4", "1.21.3"]
    assert resolver.available_versions(ServerType.VANILLA, include_snapshots=True)[0] == "25w02a"
    assert resolver.available_versions(ServerType.PAPER) == ["1.21.4", "1.21.3"]
    assert resolver.available_versions(ServerType.FORGE) == ["1.20.1"]
    assert resolver.available_versions(ServerType.FORGE, include_snapshots=True) == [
        "1.21.4",
        "1.20.1",
    ]


def test_configured_manifest_overrides_default(tmp_path: Path) -> None:
    """A configured endpoint replaces the built-in one."""
    mirror = "https://mirror.test/mojang.json"
    fetch = FakeManifests()
    fetch.responses[mirror] = fetch.responses[VANILLA_URL]
    resolver = VersionResolver(manifests={ServerType.VANILLA: mirror}, clock=lambda: NOON)
    resolver._fetch_json = fetch  # type: ignore[method-assign]

    resolver.resolve(ServerType.VANILLA, "LATEST")

    assert fetch.calls[0] == mirror


@pytest.mark.parametrize(
    ("kind", "url", "payload"),
    [
        (
            ServerType.VANILLA,
            VANILLA_URL,
            {"versions": [{"type": "release"}], "latest": {"release": "1.21"}},
        ),
        (ServerType.PAPER, PAPER_URL, ["1.21.4"]),
        (ServerType.FABRIC, f"{FABRIC_URL}/game", [{"stable": True}]),
        (ServerType.FORGE, FORGE_URL, {"promos": ["1.20.1-recommended"]}),
    ],
)
def test_malformed_manifest_is_unavailable(
    tmp_path: Path,
    kind: ServerType,
    url: str,
    payload: object,
) -> None:
    """Payloads of the wrong shape are reported as an unavailable upstream."""
    fetch = FakeManifests()
    fetch.responses[url] = payload
    resolver = _resolver(tmp_path, fetch, MutableClock(NOON))

    with pytest.raises(VersionUnavailableError, match="malformed") as info:
        resolver.resolve(kind, "LATEST")
    assert info.value.__cause__ is not None
    with pytest.raises(VersionUnavailableError):
        resolver.available_versions(kind)


def test_malformed_manifest_falls_back_to_cache(tmp_path: Path) -> None:
    """A broken upstream document uses the cached resolution like an outage."""
    clock = MutableClock(NOON)
    _resolver(tmp_path, FakeManifests(), clock).resolve(ServerType.PAPER, "LATEST")

    clock.moment = NOON + timedelta(hours=2)
    broken = FakeManifests()
    broken.responses[PAPER_URL] = ["1.21.4"]
    resolved = _resolver(tmp_path, broken, clock).resolve(ServerType.PAPER, "LATEST")

    assert resolved.build == "120"
    assert resolved.resolved_at == "2025-01-15T12:00:00Z"
