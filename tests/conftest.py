"""Shared fixtures: an in-memory container driver and canned upstream manifests."""

from __future__ import annotations

import copy
import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import pytest

from mcsctl.backups import BackupCatalog
from mcsctl.config import DEFAULT_MANIFESTS, AppConfig, load_config
from mcsctl.lifecycle import LifecycleOrchestrator
from mcsctl.locking import LockManager
from mcsctl.models import RuntimeStatus
from mcsctl.providers.container_driver import (
    ConsoleSession,
    ContainerHandle,
    ContainerSpec,
    DriverError,
    LogStream,
)
from mcsctl.providers.version_resolver import VersionResolver, VersionUnavailableError
from mcsctl.state.registry import ServerRegistry

VANILLA_URL = DEFAULT_MANIFESTS["vanilla"]
PAPER_URL = DEFAULT_MANIFESTS["paper"]
PURPUR_URL = DEFAULT_MANIFESTS["purpur"]
FABRIC_URL = DEFAULT_MANIFESTS["fabric"]
FORGE_URL = DEFAULT_MANIFESTS["forge"]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def manifest_payloads() -> dict[str, object]:
    """Return canned upstream responses keyed by URL."""
    return {
        VANILLA_URL: {
            "latest": {"release": "1.21.4", "snapshot": "25w02a"},
            "versions": [
                {"id": "25w02a", "type": "snapshot", "url": "https://meta.test/25w02a.json"},
                {"id": "1.21.4", "type": "release", "url": "https://meta.test/1.21.4.json"},
                {"id": "1.21.3", "type": "release", "url": "https://meta.test/1.21.3.json"},
            ],
        },
        "https://meta.test/25w02a.json": {
            "downloads": {"server": {"url": "https://jars.test/25w02a.jar", "sha1": "aaa"}}
        },
        "https://meta.test/1.21.4.json": {
            "downloads": {"server": {"url": "https://jars.test/1.21.4.jar", "sha1": "bbb"}}
        },
        "https://meta.test/1.21.3.json": {
            "downloads": {"server": {"url": "https://jars.test/1.21.3.jar", "sha1": "ccc"}}
        },
        PAPER_URL: {"versions": ["1.21.3", "1.21.4", "1.21.5-pre1"]},
        f"{PAPER_URL}/versions/1.21.4/builds": {
            "builds": [
                {
                    "build": 119,
                    "channel": "default",
                    "downloads": {"application": {"name": "paper-1.21.4-119.jar", "sha256": "e1"}},
                },
                {
                    "build": 120,
                    "channel": "default",
                    "downloads": {"application": {"name": "paper-1.21.4-120.jar", "sha256": "e2"}},
                },
                {
                    "build": 121,
                    "channel": "experimental",
                    "downloads": {"application": {"name": "paper-1.21.4-121.jar", "sha256": "e3"}},
                },
            ]
        },
        f"{PAPER_URL}/versions/1.21.3/builds": {
            "builds": [
                {
                    "build": 80,
                    "channel": "default",
                    "downloads": {"application": {"name": "paper-1.21.3-80.jar"}},
                }
            ]
        },
        PURPUR_URL: {"versions": ["1.21.3", "1.21.4"]},
        f"{PURPUR_URL}/1.21.4": {"builds": {"latest": "2400", "all": ["2399", "2400"]}},
        f"{PURPUR_URL}/1.21.4/2400": {"md5": "deadbeef"},
        f"{FABRIC_URL}/game": [
            {"version": "25w02a", "stable": False},
            {"version": "1.21.4", "stable": True},
            {"version": "1.21.3", "stable": True},
        ],
        f"{FABRIC_URL}/loader": [
            {"version": "0.16.11", "stable": False},
            {"version": "0.16.10", "stable": True},
        ],
        f"{FABRIC_URL}/installer": [{"version": "1.0.1", "stable": True}],
        FORGE_URL: {
            "promos": {
                "1.20.1-recommended": "47.3.0",
                "1.20.1-latest": "47.3.22",
                "1.21.4-latest": "54.0.26",
            }
        },
    }


@dataclass
class FakeManifests:
    """URL-keyed JSON fetcher that records every request."""

    responses: dict[str, object] = field(default_factory=manifest_payloads)
    calls: list[str] = field(default_factory=list)
    offline: bool = False

    def __call__(self, url: str) -> object:
        self.calls.append(url)
        if self.offline:
            raise VersionUnavailableError(f"Failed to fetch {url}: network unreachable")
        if url not in self.responses:
            raise VersionUnavailableError(f"Failed to fetch {url}: 404 Not Found")
        return copy.deepcopy(self.responses[url])


@dataclass
class FakeContainer:
    spec: ContainerSpec
    status: RuntimeStatus = RuntimeStatus.CREATED


class FakeDriver:
    """Deterministic in-memory container runtime.

    ``start_status`` overrides what a container reports after ``start``;
    ``ignore_graceful``/``ignore_force`` hold container names that refuse to
    stop; ``status_script`` queues statuses returned before the stored one.
    """

    def __init__(self, name_prefix: str = "mc-") -> None:
        self.name_prefix = name_prefix
        self.containers: dict[str, FakeContainer] = {}
        self.calls: list[tuple[str, str]] = []
        self.start_status: dict[str, RuntimeStatus] = {}
        self.status_script: dict[str, list[RuntimeStatus]] = {}
        self.ignore_graceful: set[str] = set()
        self.ignore_force: set[str] = set()
        self.fail_provision = False
        self.log_lines: dict[str, list[str]] = {}
        self.console_input: list[bytes] = []

    def handle_for(self, name: str) -> ContainerHandle:
        return ContainerHandle(name=f"{self.name_prefix}{name}")

    def provision(self, spec: ContainerSpec) -> ContainerHandle:
        self.calls.append(("provision", spec.name))
        if self.fail_provision:
            raise DriverError(f"Failed to create container {spec.name}: image pull denied")
        self.containers[spec.name] = FakeContainer(spec=spec)
        return ContainerHandle(name=spec.name, id=f"id-{spec.name}")

    def start(self, handle: ContainerHandle) -> None:
        self.calls.append(("start", handle.name))
        container = self._get(handle)
        container.status = self.start_status.get(handle.name, RuntimeStatus.RUNNING)

    def stop(self, handle: ContainerHandle, timeout: float, *, force: bool = False) -> None:
        self.calls.append(("kill" if force else "stop", handle.name))
        container = self._get(handle)
        refusing = self.ignore_force if force else self.ignore_graceful
        if handle.name not in refusing:
            container.status = RuntimeStatus.STOPPED

    def remove(self, handle: ContainerHandle) -> None:
        self.calls.append(("remove", handle.name))
        self.containers.pop(handle.name, None)

    def status(self, handle: ContainerHandle) -> RuntimeStatus:
        script = self.status_script.get(handle.name)
        if script:
            return script.pop(0)
        container = self.containers.get(handle.name)
        return container.status if container else RuntimeStatus.ABSENT

    def stream_logs(
        self,
        handle: ContainerHandle,
        *,
        follow: bool,
        tail: int | None = None,
    ) -> LogStream:
        self._get(handle)
        lines = self.log_lines.get(handle.name, [])
        if tail is not None:
            lines = lines[-tail:]
        return LogStream(iter([f"{line}\n".encode() for line in lines]))

    def exec_interactive(self, handle: ContainerHandle) -> ConsoleSession:
        self._get(handle)
        return ConsoleSession(
            sender=self.console_input.append,
            output=LogStream(iter([b"> ready\n"])),
        )

    def _get(self, handle: ContainerHandle) -> FakeContainer:
        container = self.containers.get(handle.name)
        if container is None:
            raise DriverError(f"Container {handle.name} does not exist.")
        return container


class FakeClock:
    """Monotonic clock advanced only by :meth:`sleep`."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted in a temporary base directory."""
    return load_config(env={"MCSCTL_BASE_DIR": str(tmp_path / "mc")})


@pytest.fixture()
def manifests() -> FakeManifests:
    """Canned upstream manifests."""
    return FakeManifests()


@pytest.fixture()
def resolver(app_config: AppConfig, manifests: FakeManifests) -> VersionResolver:
    """Resolver whose HTTP layer is replaced by :class:`FakeManifests`."""
    instance = VersionResolver(
        cache_path=app_config.resolver.cache_file,
        clock=lambda: datetime(2025, 1, 15, 12, 0, tzinfo=UTC),
    )
    instance._fetch_json = manifests  # type: ignore[method-assign]
    return instance


@pytest.fixture()
def driver() -> FakeDriver:
    """In-memory container driver."""
    return FakeDriver()


@pytest.fixture()
def clock() -> FakeClock:
    """Virtual clock used for polling."""
    return FakeClock()


@pytest.fixture()
def registry(app_config: AppConfig) -> ServerRegistry:
    """Registry stored under the temporary base directory."""
    return ServerRegistry(app_config.registry_file)


@pytest.fixture()
def orchestrator(
    app_config: AppConfig,
    registry: ServerRegistry,
    driver: FakeDriver,
    resolver: VersionResolver,
    clock: FakeClock,
) -> Iterator[LifecycleOrchestrator]:
    """Orchestrator wired to fakes and a virtual clock."""
    yield LifecycleOrchestrator(
        config=app_config,
        registry=registry,
        driver=driver,
        resolver=resolver,
        locks=LockManager(app_config.runtime_dir, default_timeout=1.0),
        catalog=BackupCatalog(app_config.backups.root, app_config.backups.index),
        sleep=clock.sleep,
        clock=clock,
    )
