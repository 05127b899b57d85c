"""Resolve symbolic or explicit version tags to downloadable server builds.

Each :class:`~mcsctl.models.ServerType` maps to one :class:`ManifestSource`
variant that knows its upstream manifest format. The :class:`VersionResolver`
adds two cache layers on top:

* an in-memory session cache keyed by ``(type, tag, UTC day)`` so repeated
  resolutions within one process do not hit the network again;
* a JSON file of the most recent successful resolution per ``(type, tag)``
  used only as a fallback when the upstream manifest cannot be fetched, and
  only while it is younger than the configured staleness window.

Explicit versions missing from a manifest raise :class:`UnknownVersionError`
and never fall back to another version.
"""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, ClassVar

import requests
from packaging.version import InvalidVersion, Version

from .. import __version__
from ..config import DEFAULT_MANIFESTS
from ..models import SYMBOLIC_TAGS, ResolvedVersion, ServerType, parse_iso

LOGGER = logging.getLogger(__name__)

FORGE_MAVEN = "https://maven.minecraftforge.net/net/minecraftforge/forge"
SPIGOT_DESCRIPTORS = "https://hub.spigotmc.org/versions"

_PRERELEASE_PATTERNS = (
    re.compile(r"\d+w\d+[a-z]", re.IGNORECASE),
    re.compile(r"-(pre|rc)\d*", re.IGNORECASE),
    re.compile(r"(snapshot|alpha|beta|dev)", re.IGNORECASE),
)

FetchJson = Callable[[str], Any]

# Raised when an upstream document does not have the expected shape.
_MALFORMED = (KeyError, IndexError, TypeError, AttributeError, ValueError)


class ResolutionError(RuntimeError):
    """Raised when a version tag cannot be resolved."""


class VersionUnavailableError(ResolutionError):
    """Raised when the upstream manifest is unreachable and no usable cache exists."""


class UnknownVersionError(ResolutionError):
    """Raised when an explicit version is not published for the server type."""


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def is_prerelease(version: str) -> bool:
    """Return ``True`` for snapshot, pre-release and release-candidate identifiers."""
    return any(pattern.search(version) for pattern in _PRERELEASE_PATTERNS)


def normalize_tag(tag: str) -> str:
    """Upper-case symbolic tags, strip explicit versions."""
    text = str(tag).strip()
    if not text:
        raise UnknownVersionError("Version tag must be a non-empty string.")
    if text.upper() in SYMBOLIC_TAGS:
        return text.upper()
    return text


def version_sort_key(value: str) -> tuple[int, Version | str]:
    """Sort key placing PEP 440 parseable versions by value, others lexically."""
    try:
        return (1, Version(value))
    except InvalidVersion:
        return (0, value)


# ----------------------------------------------------------------------
# Manifest sources
# ----------------------------------------------------------------------
class ManifestSource:
    """Upstream manifest for one server type."""

    server_type: ClassVar[ServerType]

    def __init__(self, base_url: str, fetch: FetchJson) -> None:
        """Bind the source to its endpoint and JSON fetcher."""
        self.base_url = base_url.rstrip("/")
        self._fetch = fetch

    def versions(self, *, include_snapshots: bool = False) -> list[str]:
        """Return published game versions, newest first."""
        raise NotImplementedError

    def resolve(self, tag: str) -> ResolvedVersion:
        """Return the artifact for *tag* (``LATEST``, ``SNAPSHOT`` or explicit)."""
        raise NotImplementedError

    def _pick(self, tag: str, ordered: Sequence[str]) -> str:
        """Select a version from *ordered* (newest first) according to *tag*."""
        if not ordered:
            raise VersionUnavailableError(
                f"{self.server_type.value} manifest lists no versions."
            )
        if tag == "LATEST":
            for version in ordered:
                if not is_prerelease(version):
                    return version
            return ordered[0]
        if tag == "SNAPSHOT":
            for version in ordered:
                if is_prerelease(version):
                    return version
            return ordered[0]
        if tag not in ordered:
            raise UnknownVersionError(
                f"{self.server_type.value} version '{tag}' is not published upstream."
            )
        return tag

    def _result(self, tag: str, version: str, url: str, **extra: Any) -> ResolvedVersion:
        return ResolvedVersion(
            server_type=self.server_type,
            tag=tag,
            version=version,
            url=url,
            build=extra.get("build"),
            checksum=extra.get("checksum"),
        )


class VanillaSource(ManifestSource):
    """Mojang ``version_manifest_v2.json``."""

    server_type = ServerType.VANILLA

    def _manifest(self) -> Mapping[str, Any]:
        manifest = self._fetch(self.base_url)
        if not isinstance(manifest, Mapping):
            raise VersionUnavailableError("Mojang manifest is malformed.")
        return manifest

    def versions(self, *, include_snapshots: bool = False) -> list[str]:
        """Return Mojang versions in manifest order (newest first)."""
        entries = self._manifest().get("versions") or []
        return [
            str(entry["id"])
            for entry in entries
            if include_snapshots or entry.get("type") == "release"
        ]

    def resolve(self, tag: str) -> ResolvedVersion:
        """Resolve via ``latest.release``/``latest.snapshot`` or an explicit id."""
        manifest = self._manifest()
        latest = manifest.get("latest") or {}
        entries = {str(entry["id"]): entry for entry in manifest.get("versions") or []}
        if tag == "LATEST":
            version = str(latest.get("release") or "")
        elif tag == "SNAPSHOT":
            version = str(latest.get("snapshot") or latest.get("release") or "")
        else:
            version = tag
        entry = entries.get(version)
        if entry is None:
            if tag in SYMBOLIC_TAGS:
                raise VersionUnavailableError("Mojang manifest has no usable latest entry.")
            raise UnknownVersionError(f"Minecraft version '{tag}' is not published by Mojang.")
        document = self._fetch(str(entry["url"]))
        server = ((document or {}).get("downloads") or {}).get("server")
        if not server:
            raise UnknownVersionError(f"Minecraft {version} has no dedicated server download.")
        checksum = {"algorithm": "sha1", "value": str(server["sha1"])} if server.get("sha1") else None
        return self._result(tag, version, str(server["url"]), checksum=checksum)


class PaperSource(ManifestSource):
    """PaperMC v2 project API."""

    server_type = ServerType.PAPER

    def versions(self, *, include_snapshots: bool = False) -> list[str]:
        """Return Paper versions newest first."""
        project = self._fetch(self.base_url) or {}
        ordered = [str(item) for item in reversed(project.get("versions") or [])]
        if include_snapshots:
            return ordered
        return [item for item in ordered if not is_prerelease(item)]

    def resolve(self, tag: str) -> ResolvedVersion:
        """Pick the version, then its newest ``default`` channel build."""
        version = self._pick(tag, self.versions(include_snapshots=True))
        payload = self._fetch(f"{self.base_url}/versions/{version}/builds") or {}
        builds = list(payload.get("builds") or [])
        if not builds:
            raise VersionUnavailableError(f"Paper {version} has no published builds.")
        stable = [item for item in builds if item.get("channel", "default") == "default"]
        chosen = (stable or builds)[-1] if tag != "SNAPSHOT" else builds[-1]
        build = str(chosen["build"])
        application = (chosen.get("downloads") or {}).get("application") or {}
        jar = application.get("name") or f"paper-{version}-{build}.jar"
        checksum = (
            {"algorithm": "sha256", "value": str(application["sha256"])}
            if application.get("sha256")
            else None
        )
        url = f"{self.base_url}/versions/{version}/builds/{build}/downloads/{jar}"
        return self._result(tag, version, url, build=build, checksum=checksum)


class PurpurSource(ManifestSource):
    """Purpur v2 API."""

    server_type = ServerType.PURPUR

    def versions(self, *, include_snapshots: bool = False) -> list[str]:
        """Return Purpur versions newest first."""
        project = self._fetch(self.base_url) or {}
        ordered = [str(item) for item in reversed(project.get("versions") or [])]
        if include_snapshots:
            return ordered
        return [item for item in ordered if not is_prerelease(item)]

    def resolve(self, tag: str) -> ResolvedVersion:
        """Pick the version and its latest build."""
        version = self._pick(tag, self.versions(include_snapshots=True))
        payload = self._fetch(f"{self.base_url}/{version}") or {}
        builds = payload.get("builds") or {}
        if isinstance(builds, Mapping):
            build = builds.get("latest") or (list(builds.get("all") or []) or [None])[-1]
        else:
            build = list(builds)[-1] if builds else None
        if not build:
            raise VersionUnavailableError(f"Purpur {version} has no published builds.")
        detail = self._fetch(f"{self.base_url}/{version}/{build}") or {}
        checksum = {"algorithm": "md5", "value": str(detail["md5"])} if detail.get("md5") else None
        url = f"{self.base_url}/{version}/{build}/download"
        return self._result(tag, version, url, build=str(build), checksum=checksum)


class FabricSource(ManifestSource):
    """Fabric meta API; the artifact is the server launcher jar."""

    server_type = ServerType.FABRIC

    def versions(self, *, include_snapshots: bool = False) -> list[str]:
        """Return supported game versions newest first."""
        games = self._fetch(f"{self.base_url}/game") or []
        return [
            str(item["version"])
            for item in games
            if include_snapshots or item.get("stable", False)
        ]

    def resolve(self, tag: str) -> ResolvedVersion:
        """Pick the game version, the newest stable loader and installer."""
        games = self._fetch(f"{self.base_url}/game") or []
        ordered = [str(item["version"]) for item in games]
        stable = {str(item["version"]) for item in games if item.get("stable", False)}
        if tag == "LATEST":
            version = next((item for item in ordered if item in stable), "")
            if not version:
                version = self._pick(tag, ordered)
        else:
            version = self._pick(tag, ordered)
        loader = self._first_stable(self._fetch(f"{self.base_url}/loader") or [])
        installer = self._first_stable(self._fetch(f"{self.base_url}/installer") or [])
        if not loader or not installer:
            raise VersionUnavailableError("Fabric meta lists no loader or installer versions.")
        url = f"{self.base_url}/loader/{version}/{loader}/{installer}/server/jar"
        return self._result(tag, version, url, build=loader)

    @staticmethod
    def _first_stable(entries: Sequence[Mapping[str, Any]]) -> str | None:
        for entry in entries:
            if entry.get("stable", False):
                return str(entry["version"])
        return str(entries[0]["version"]) if entries else None


class ForgeSource(ManifestSource):
    """Forge ``promotions_slim.json``; LATEST uses recommended builds."""

    server_type = ServerType.FORGE

    def _promos(self) -> dict[str, str]:
        payload = self._fetch(self.base_url) or {}
        return {str(key): str(value) for key, value in (payload.get("promos") or {}).items()}

    @staticmethod
    def _game_versions(promos: Mapping[str, str], suffix: str | None = None) -> list[str]:
        found: set[str] = set()
        for key in promos:
            game, _, kind = key.rpartition("-")
            if suffix is None or kind == suffix:
                found.add(game)
        return sorted(found, key=version_sort_key, reverse=True)

    def versions(self, *, include_snapshots: bool = False) -> list[str]:
        """Return game versions with a promoted build, newest first."""
        promos = self._promos()
        return self._game_versions(promos, None if include_snapshots else "recommended")

    def resolve(self, tag: str) -> ResolvedVersion:
        """Pick the game version and the promoted Forge build for it."""
        promos = self._promos()
        if tag == "LATEST":
            candidates = self._game_versions(promos, "recommended")
            if not candidates:
                raise VersionUnavailableError("Forge publishes no recommended builds.")
            version = candidates[0]
            build = promos[f"{version}-recommended"]
        elif tag == "SNAPSHOT":
            candidates = self._game_versions(promos, "latest")
            if not candidates:
                raise VersionUnavailableError("Forge publishes no builds.")
            version = candidates[0]
            build = promos[f"{version}-latest"]
        else:
            version = tag
            build = promos.get(f"{version}-recommended") or promos.get(f"{version}-latest") or ""
            if not build:
                raise UnknownVersionError(f"Forge has no build for Minecraft '{tag}'.")
        coordinate = f"{version}-{build}"
        url = f"{FORGE_MAVEN}/{coordinate}/forge-{coordinate}-installer.jar"
        return self._result(tag, version, url, build=build)


class SpigotSource(VanillaSource):
    """Game versions from Mojang; the artifact is the BuildTools descriptor."""

    server_type = ServerType.SPIGOT

    def versions(self, *, include_snapshots: bool = False) -> list[str]:
        """Return release versions only; Spigot does not build snapshots."""
        return super().versions(include_snapshots=False)

    def resolve(self, tag: str) -> ResolvedVersion:
        """Resolve against Mojang releases and point at the BuildTools descriptor."""
        manifest = self._manifest()
        releases = [
            str(entry["id"])
            for entry in manifest.get("versions") or []
            if entry.get("type") == "release"
        ]
        if tag in SYMBOLIC_TAGS:
            version = str((manifest.get("latest") or {}).get("release") or "")
            if not version:
                version = self._pick(tag, releases)
        elif tag in releases:
            version = tag
        else:
            raise UnknownVersionError(f"Spigot version '{tag}' is not a Minecraft release.")
        return self._result(tag, version, f"{SPIGOT_DESCRIPTORS}/{version}.json")


SOURCES: dict[ServerType, type[ManifestSource]] = {
    ServerType.VANILLA: VanillaSource,
    ServerType.PAPER: PaperSource,
    ServerType.PURPUR: PurpurSource,
    ServerType.FABRIC: FabricSource,
    ServerType.FORGE: ForgeSource,
    ServerType.SPIGOT: SpigotSource,
}


# ----------------------------------------------------------------------
# Resolver
# ----------------------------------------------------------------------
class VersionResolver:
    """Resolve version tags with session caching and stale-cache fallback."""

    def __init__(
        self,
        *,
        cache_path: Path | None = None,
        manifests: Mapping[ServerType, str] | None = None,
        staleness: timedelta = timedelta(hours=24),
        timeout: float = 15.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Configure endpoints, cache location and freshness window."""
        self.cache_path = cache_path.expanduser() if cache_path else None
        self.manifests = dict(manifests or {})
        self.staleness = staleness
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._session_cache: dict[tuple[ServerType, str, str], ResolvedVersion] = {}
        self._http: requests.Session | None = None

    # ------------------------------------------------------------------
    def source_for(self, server_type: ServerType) -> ManifestSource:
        """Return the manifest source for *server_type*."""
        url = self.manifests.get(server_type) or DEFAULT_MANIFESTS[server_type.value.lower()]
        return SOURCES[server_type](url, lambda target: self._fetch_json(target))

    def resolve(
        self,
        server_type: ServerType | str,
        tag: str,
        *,
        fresh: bool = False,
    ) -> ResolvedVersion:
        """Resolve *tag* for *server_type*.

        ``fresh=True`` bypasses the session cache (used for provisioning with
        symbolic tags); the result is still cached and the stale-cache
        fallback still applies when the upstream is unreachable.
        """
        kind = ServerType.parse(server_type)
        normalized = normalize_tag(tag)
        key = (kind, normalized, self._clock().date().isoformat())
        if not fresh:
            cached = self._session_cache.get(key)
            if cached is not None and self._within_window(cached):
                return cached
        try:
            resolved = self._checked(kind, lambda source: source.resolve(normalized))
        except VersionUnavailableError as exc:
            fallback = self._cached_resolution(kind, normalized)
            if fallback is None:
                raise
            LOGGER.warning(
                "Upstream manifest for %s unavailable (%s); using cached resolution from %s.",
                kind.value,
                exc,
                fallback.resolved_at,
            )
            return fallback
        resolved = replace(resolved, resolved_at=_iso(self._clock()))
        self._session_cache[key] = resolved
        self._record(resolved)
        return resolved

    def available_versions(
        self,
        server_type: ServerType | str,
        include_snapshots: bool = False,
    ) -> list[str]:
        """Return published versions for *server_type*, newest first."""
        kind = ServerType.parse(server_type)
        return self._checked(
            kind,
            lambda source: source.versions(include_snapshots=include_snapshots),
        )

    # ------------------------------------------------------------------
    def _checked(self, kind: ServerType, call: Callable[[ManifestSource], Any]) -> Any:
        try:
            return call(self.source_for(kind))
        except _MALFORMED as exc:
            raise VersionUnavailableError(
                f"{kind.value} manifest is malformed: {exc!r}"
            ) from exc

    def _fetch_json(self, url: str) -> Any:
        if self._http is None:
            self._http = requests.Session()
            self._http.headers["User-Agent"] = f"mcsctl/{__version__}"
        try:
            response = self._http.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise VersionUnavailableError(f"Failed to fetch {url}: {exc}") from exc
        except ValueError as exc:
            raise VersionUnavailableError(f"Malformed JSON from {url}: {exc}") from exc

    def _within_window(self, resolved: ResolvedVersion) -> bool:
        stamp = parse_iso(resolved.resolved_at)
        if stamp is None:
            return False
        return self._clock() - stamp <= self.staleness

    def _cached_resolution(self, kind: ServerType, tag: str) -> ResolvedVersion | None:
        entry = self._read_cache().get(f"{kind.value}:{tag}")
        if not isinstance(entry, Mapping):
            return None
        try:
            resolved = ResolvedVersion.from_mapping(entry)
        except (KeyError, TypeError, ValueError):
            return None
        return resolved if self._within_window(resolved) else None

    def _read_cache(self) -> dict[str, object]:
        if self.cache_path is None or not self.cache_path.exists():
            return {}
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable version cache %s: %s", self.cache_path, exc)
            return {}
        resolutions = data.get("resolutions") if isinstance(data, Mapping) else None
        return dict(resolutions) if isinstance(resolutions, Mapping) else {}

    def _record(self, resolved: ResolvedVersion) -> None:
        if self.cache_path is None:
            return
        resolutions = self._read_cache()
        resolutions[f"{resolved.server_type.value}:{resolved.tag}"] = resolved.to_dict()
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.cache_path.parent),
                prefix=f".{self.cache_path.name}.",
            )
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                    json.dump({"resolutions": resolutions}, handle, indent=2)
                    handle.write("\n")
                os.replace(tmp_path, self.cache_path)
            finally:
                tmp_path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not update version cache %s: %s", self.cache_path, exc)


__all__ = [
    "FabricSource",
    "ForgeSource",
    "ManifestSource",
    "PaperSource",
    "PurpurSource",
    "ResolutionError",
    "SOURCES",
    "SpigotSource",
    "UnknownVersionError",
    "VanillaSource",
    "VersionResolver",
    "VersionUnavailableError",
    "is_prerelease",
    "normalize_tag",
    "version_sort_key",
]
