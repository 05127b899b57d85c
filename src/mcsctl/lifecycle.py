"""Server lifecycle orchestration.

:class:`LifecycleOrchestrator` composes the registry, the version resolver, the
container driver and the backup engine. It owns the per-server state machine::

    UNPROVISIONED -> PROVISIONED -> RUNNING -> STOPPING -> STOPPED

ERROR is entered whenever the runtime reports a failed container or a start
never confirms.

The live runtime status is re-queried from the driver before every mutation;
``ServerConfig.last_status`` is informational only. A registered server whose
container has vanished is reported as inconsistent and is never auto-healed.
Operations against one server are serialised through its lock file; different
servers may be operated on concurrently.
"""
from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .backups import BackupCatalog, BackupEngine, BackupRecord
from .config import AppConfig
from .locking import LockManager, LockTimeoutError
from .models import (
    SYMBOLIC_TAGS,
    LifecycleState,
    RuntimeStatus,
    ServerConfig,
    ServerType,
    now_iso,
    validate_server_name,
)
from .polling import PollPolicy, PollResult, poll_until
from .providers.container_driver import (
    ConsoleSession,
    ContainerDriver,
    ContainerHandle,
    DriverError,
    LogStream,
)
from .providers.version_resolver import ResolutionError, VersionResolver, normalize_tag
from .provisioning import build_container_spec, parse_memory
from .state.registry import DuplicateNameError, ServerRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)


class LifecycleError(RuntimeError):
    """Base class for orchestration failures."""


class ValidationError(LifecycleError):
    """Raised when a request is rejected before any side effect."""


class InvalidStateError(LifecycleError):
    """Raised when an operation is not allowed in the server's current state."""

    def __init__(self, name: str, state: LifecycleState, operation: str) -> None:
        """Record the offending *state* for *operation* on *name*."""
        super().__init__(f"Cannot {operation} server '{name}' while it is {state.value}.")
        self.name = name
        self.state = state
        self.operation = operation


class InconsistentStateError(LifecycleError):
    """Raised when a registered server has no container."""

    def __init__(self, name: str) -> None:
        """Record the inconsistent server *name*."""
        super().__init__(
            f"Server '{name}' is registered but its container is missing. "
            "Remove it or restore from a backup."
        )
        self.name = name


class StartupError(LifecycleError):
    """Raised when a started container never reaches RUNNING."""


@dataclass(frozen=True, slots=True)
class CreateRequest:
    """User input for :meth:`LifecycleOrchestrator.create`."""

    name: str
    server_type: ServerType | str
    version: str = "LATEST"
    memory: str = "2G"
    port: int = 25565
    java_args: str | None = None
    loader_version: str | None = None
    extra_args: tuple[str, ...] = ()
    accept_eula: bool = False


@dataclass(frozen=True, slots=True)
class ServerState:
    """Registry entry joined with the live runtime status."""

    config: ServerConfig
    runtime: RuntimeStatus

    @property
    def name(self) -> str:
        """Return the server name."""
        return self.config.name

    @property
    def lifecycle(self) -> LifecycleState:
        """Return the lifecycle state implied by the runtime status."""
        return LifecycleState.from_runtime(self.runtime)

    @property
    def inconsistent(self) -> bool:
        """Return ``True`` when the registry lists a server the runtime lacks."""
        return self.runtime is RuntimeStatus.ABSENT


@dataclass(frozen=True, slots=True)
class StartResult:
    """Outcome of a start request."""

    name: str
    state: LifecycleState
    changed: bool
    attempts: int = 0


@dataclass(frozen=True, slots=True)
class StopResult:
    """Outcome of a stop request; ``degraded`` means a forced stop was needed."""

    name: str
    state: LifecycleState
    changed: bool
    degraded: bool = False


@dataclass(frozen=True, slots=True)
class RemoveResult:
    """Outcome of a remove request."""

    name: str
    data_dir: Path
    data_kept: bool
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class BulkOutcome:
    """Per-server outcome of :meth:`LifecycleOrchestrator.start_all`/``stop_all``."""

    name: str
    ok: bool
    message: str
    error: Exception | None = field(default=None, compare=False)


_BULK_ERRORS = (
    LifecycleError,
    DriverError,
    StateRegistryError,
    LockTimeoutError,
)


class LifecycleOrchestrator:
    """Reconcile declared servers with their containers."""

    def __init__(
        self,
        *,
        config: AppConfig,
        registry: ServerRegistry,
        driver: ContainerDriver,
        resolver: VersionResolver,
        locks: LockManager,
        catalog: BackupCatalog,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Wire the orchestrator to explicit collaborator handles."""
        self.config = config
        self.registry = registry
        self.driver = driver
        self.resolver = resolver
        self.locks = locks
        self._sleep = sleep
        self._clock = clock
        self.backups = BackupEngine(
            catalog,
            data_dir_for=self.data_dir,
            status_of=self.runtime_status,
            compression=config.backups.compression,
            compression_level=config.backups.compression_level,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def data_dir(self, name: str) -> Path:
        """Return the persistent data directory for *name*."""
        return self.config.data_dir(name)

    def handle(self, name: str) -> ContainerHandle:
        """Return the container handle for *name*."""
        return self.driver.handle_for(name)

    def runtime_status(self, name: str) -> RuntimeStatus:
        """Query the driver for the live status of *name*."""
        return self.driver.status(self.handle(name))

    def observe(self, name: str) -> ServerState:
        """Return the registry entry for *name* joined with its live status."""
        config = self.registry.get(name)
        return ServerState(config=config, runtime=self.runtime_status(name))

    def observe_all(self) -> list[ServerState]:
        """Return :meth:`observe` for every registered server in creation order."""
        return [
            ServerState(config=config, runtime=self.runtime_status(config.name))
            for config in self.registry.list()
        ]

    # ------------------------------------------------------------------
    # Create / remove
    # ------------------------------------------------------------------
    def create(self, request: CreateRequest) -> ServerConfig:
        """Validate, resolve, persist and provision a new server."""
        config = self._validated_config(request)
        if self.registry.contains(config.name):
            raise DuplicateNameError(config.name)

        with self.locks.server_lock(config.name):
            if self.registry.contains(config.name):
                raise DuplicateNameError(config.name)
            resolved = self.resolver.resolve(
                config.server_type,
                config.version,
                fresh=config.version in SYMBOLIC_TAGS,
            )
            config = config.with_updates(resolved=resolved)
            self.registry.create(config)

            server_root = self.data_dir(config.name).parent
            created_root = not server_root.exists()
            try:
                self.data_dir(config.name).mkdir(parents=True, exist_ok=True)
                spec = build_container_spec(
                    config,
                    container_name=self.handle(config.name).name,
                    data_dir=self.data_dir(config.name),
                    settings=self.config.container,
                )
                self.driver.provision(spec)
            except Exception:
                LOGGER.warning("Provisioning '%s' failed; rolling back registry entry.", config.name)
                self.registry.remove(config.name)
                if created_root:
                    shutil.rmtree(server_root, ignore_errors=True)
                raise
            return self._record(config.name, LifecycleState.PROVISIONED)

    def remove(self, name: str, *, keep_data: bool = False) -> RemoveResult:
        """Remove the container, the registry entry and (unless kept) the data."""
        with self.locks.server_lock(name):
            state = self.observe(name)
            if state.runtime is RuntimeStatus.RUNNING:
                raise InvalidStateError(name, state.lifecycle, "remove")
            warnings: list[str] = []
            if state.inconsistent:
                message = f"Container for '{name}' was already absent."
                LOGGER.warning(message)
                warnings.append(message)
            else:
                self.driver.remove(self.handle(name))
            self.registry.remove(name)

            data_dir = self.data_dir(name)
            server_root = data_dir.parent
            if keep_data:
                message = f"Data for '{name}' kept at {data_dir}."
                LOGGER.warning(message)
                warnings.append(message)
            elif server_root.exists():
                try:
                    shutil.rmtree(server_root)
                except OSError as exc:
                    message = f"Could not delete {server_root}: {exc}"
                    LOGGER.warning(message)
                    warnings.append(message)
            return RemoveResult(
                name=name,
                data_dir=data_dir,
                data_kept=keep_data,
                warnings=tuple(warnings),
            )

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------
    def start(self, name: str) -> StartResult:
        """Start *name* and wait (bounded) until the driver reports RUNNING."""
        with self.locks.server_lock(name):
            state = self._require_present(name)
            if state.runtime is RuntimeStatus.RUNNING:
                return StartResult(name=name, state=LifecycleState.RUNNING, changed=False)
            if state.lifecycle not in (LifecycleState.PROVISIONED, LifecycleState.STOPPED):
                raise InvalidStateError(name, state.lifecycle, "start")

            handle = self.handle(name)
            try:
                self.driver.start(handle)
            except DriverError:
                self._record(name, LifecycleState.ERROR)
                raise
            outcome = poll_until(
                lambda: self.driver.status(handle),
                lambda status: status in (RuntimeStatus.RUNNING, RuntimeStatus.ERROR),
                self._policy(self.config.health.start_timeout),
                retry_on=(DriverError,),
                sleep=self._sleep,
                clock=self._clock,
            )
            if not outcome.satisfied or outcome.value is not RuntimeStatus.RUNNING:
                self._record(name, LifecycleState.ERROR)
                observed = outcome.value.value if outcome.value else "unknown"
                raise StartupError(
                    f"Server '{name}' did not reach RUNNING after {outcome.attempts} checks "
                    f"(last status: {observed})."
                ) from outcome.last_error
            self._record(name, LifecycleState.RUNNING, last_started_at=now_iso())
            return StartResult(
                name=name,
                state=LifecycleState.RUNNING,
                changed=True,
                attempts=outcome.attempts,
            )

    def stop(self, name: str) -> StopResult:
        """Stop *name* gracefully, escalating to a forced stop when it lingers."""
        with self.locks.server_lock(name):
            state = self._require_present(name)
            if state.lifecycle in (LifecycleState.STOPPED, LifecycleState.PROVISIONED):
                return StopResult(name=name, state=state.lifecycle, changed=False)
            if state.runtime is not RuntimeStatus.RUNNING:
                raise InvalidStateError(name, state.lifecycle, "stop")

            handle = self.handle(name)
            self._record(name, LifecycleState.STOPPING)
            timeout = self.config.container.stop_timeout
            try:
                self.driver.stop(handle, timeout)
            except DriverError as exc:
                LOGGER.warning("Graceful stop of '%s' failed: %s", name, exc)

            policy = self._policy(self.config.health.stop_grace)
            outcome = self._await_stopped(handle, policy)
            degraded = False
            if not outcome.satisfied:
                degraded = True
                LOGGER.warning(
                    "Server '%s' still running after graceful stop; forcing it down.", name
                )
                try:
                    self.driver.stop(handle, 0, force=True)
                except DriverError:
                    self._record(name, LifecycleState.ERROR)
                    raise
                outcome = self._await_stopped(handle, policy)
                if not outcome.satisfied:
                    self._record(name, LifecycleState.ERROR)
                    raise DriverError(
                        f"Server '{name}' is still running after a forced stop."
                    ) from outcome.last_error

            final = LifecycleState.from_runtime(outcome.value or RuntimeStatus.STOPPED)
            self._record(name, final)
            return StopResult(name=name, state=final, changed=True, degraded=degraded)

    def start_all(self) -> list[BulkOutcome]:
        """Start every registered server, collecting per-server outcomes."""
        outcomes: list[BulkOutcome] = []
        for config in self.registry.list():
            try:
                result = self.start(config.name)
            except _BULK_ERRORS as exc:
                outcomes.append(BulkOutcome(config.name, False, str(exc), exc))
                continue
            message = "started" if result.changed else "already running"
            outcomes.append(BulkOutcome(config.name, True, message))
        return outcomes

    def stop_all(self) -> list[BulkOutcome]:
        """Stop every registered server, collecting per-server outcomes."""
        outcomes: list[BulkOutcome] = []
        for config in self.registry.list():
            try:
                result = self.stop(config.name)
            except _BULK_ERRORS as exc:
                outcomes.append(BulkOutcome(config.name, False, str(exc), exc))
                continue
            if not result.changed:
                message = "already stopped"
            elif result.degraded:
                message = "stopped (forced)"
            else:
                message = "stopped"
            outcomes.append(BulkOutcome(config.name, True, message))
        return outcomes

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------
    def logs(self, name: str, *, follow: bool = False, tail: int | None = None) -> LogStream:
        """Return the log stream of *name*."""
        self._require_present(name)
        return self.driver.stream_logs(self.handle(name), follow=follow, tail=tail)

    def console(self, name: str) -> ConsoleSession:
        """Attach to the console of a running server."""
        state = self._require_present(name)
        if state.runtime is not RuntimeStatus.RUNNING:
            raise InvalidStateError(name, state.lifecycle, "attach to")
        return self.driver.exec_interactive(self.handle(name))

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------
    def backup(self, name: str) -> BackupRecord:
        """Archive the data of *name*; the server must not be running."""
        with self.locks.server_lock(name):
            self.registry.get(name)
            return self.backups.backup(name)

    def restore(self, name: str, archive_path: Path) -> BackupRecord:
        """Restore the data of *name* from *archive_path*."""
        with self.locks.server_lock(name):
            self.registry.get(name)
            return self.backups.restore(name, archive_path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _validated_config(self, request: CreateRequest) -> ServerConfig:
        try:
            name = validate_server_name(request.name)
            server_type = ServerType.parse(request.server_type)
            parse_memory(request.memory)
            tag = normalize_tag(request.version)
        except (ValueError, ResolutionError) as exc:
            raise ValidationError(str(exc)) from exc
        if not request.accept_eula:
            raise ValidationError(
                "The Minecraft EULA must be accepted "
                "(https://aka.ms/MinecraftEULA)."
            )
        if not 1 <= request.port <= 65535:
            raise ValidationError(f"Port must be between 1 and 65535. Got {request.port}.")
        if request.loader_version and not server_type.uses_loader:
            raise ValidationError(
                f"Loader versions only apply to FORGE and FABRIC, not {server_type.value}."
            )
        return ServerConfig(
            name=name,
            server_type=server_type,
            version=tag,
            memory=request.memory.strip().upper(),
            port=request.port,
            java_args=request.java_args or None,
            loader_version=request.loader_version or None,
            extra_args=tuple(request.extra_args),
        )

    def _require_present(self, name: str) -> ServerState:
        state = self.observe(name)
        if state.inconsistent:
            raise InconsistentStateError(name)
        return state

    def _policy(self, timeout: float) -> PollPolicy:
        health = self.config.health
        return PollPolicy(
            timeout=timeout,
            initial_delay=health.initial_delay,
            max_delay=health.max_delay,
            multiplier=health.multiplier,
        )

    def _await_stopped(
        self,
        handle: ContainerHandle,
        policy: PollPolicy,
    ) -> PollResult[RuntimeStatus]:
        return poll_until(
            lambda: self.driver.status(handle),
            lambda status: status is not RuntimeStatus.RUNNING,
            policy,
            retry_on=(DriverError,),
            sleep=self._sleep,
            clock=self._clock,
        )

    def _record(self, name: str, state: LifecycleState, **extra: object) -> ServerConfig:
        return self.registry.update(
            name,
            lambda config: config.with_updates(last_status=state.value, **extra),
        )


__all__ = [
    "BulkOutcome",
    "CreateRequest",
    "InconsistentStateError",
    "InvalidStateError",
    "LifecycleError",
    "LifecycleOrchestrator",
    "RemoveResult",
    "ServerState",
    "StartResult",
    "StartupError",
    "StopResult",
    "ValidationError",
]
