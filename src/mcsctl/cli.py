"""Typer-powered command line interface for ``mcsctl``.

Every command builds on a :class:`RuntimeContext` created once per invocation
from the layered configuration, runs inside a structured operation log entry,
and maps library errors to stable exit codes (see :mod:`mcsctl.exit_codes`).
"""
from __future__ import annotations

import textwrap
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import (
    BackupCatalog,
    BackupCatalogError,
    BackupNotFoundError,
    BackupRecord,
    BackupServerRunningError,
    RestoreServerRunningError,
)
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .lifecycle import (
    BulkOutcome,
    CreateRequest,
    InconsistentStateError,
    InvalidStateError,
    LifecycleOrchestrator,
    ServerState,
    ValidationError,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import ServerType
from .providers.container_driver import ContainerDriver, DriverUnavailableError
from .providers.version_resolver import UnknownVersionError, VersionResolver
from .state.registry import DuplicateNameError, ServerNotFoundError, ServerRegistry

console = Console()

EULA_URL = "https://aka.ms/MinecraftEULA"

TAG_FORMATS: dict[ServerType, str] = {
    ServerType.VANILLA: "LATEST, SNAPSHOT or a Mojang id (1.21.4, 24w14a)",
    ServerType.PAPER: "LATEST, SNAPSHOT or a Paper game version (1.21.4)",
    ServerType.PURPUR: "LATEST, SNAPSHOT or a Purpur game version (1.21.4)",
    ServerType.FABRIC: "LATEST, SNAPSHOT or a game version; --loader-version pins the loader",
    ServerType.FORGE: "LATEST (recommended), SNAPSHOT (latest build) or a game version",
    ServerType.SPIGOT: "LATEST or a Minecraft release (built with BuildTools)",
}

_VALIDATION_ERRORS: tuple[type[Exception], ...] = (
    ValidationError,
    InvalidStateError,
    InconsistentStateError,
    DuplicateNameError,
    ServerNotFoundError,
    UnknownVersionError,
    BackupServerRunningError,
    RestoreServerRunningError,
    BackupNotFoundError,
)
_ENVIRONMENT_ERRORS: tuple[type[Exception], ...] = (
    ConfigError,
    LockTimeoutError,
    DriverUnavailableError,
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to mcsctl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON.",
)


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Minecraft server lifecycle manager.

        Creates, starts, stops, backs up and restores Minecraft servers running
        in Docker containers on this host.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: ServerRegistry
    resolver: VersionResolver
    locks: LockManager
    logger: StructuredLogger
    catalog: BackupCatalog
    driver: ContainerDriver
    orchestrator: LifecycleOrchestrator


def _build_driver(config: AppConfig) -> ContainerDriver:
    """Return the container driver; Docker is contacted on first use."""
    from .providers.docker_driver import DockerDriver

    return DockerDriver(
        name_prefix=config.container.name_prefix,
        docker_host=config.container.docker_host,
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    registry = ServerRegistry(config.registry_file)
    resolver = VersionResolver(
        cache_path=config.resolver.cache_file,
        manifests=config.resolver.manifests,
        staleness=timedelta(hours=config.resolver.staleness_hours),
        timeout=config.resolver.timeout,
    )
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    catalog = BackupCatalog(config.backups.root, config.backups.index)
    driver = _build_driver(config)
    orchestrator = LifecycleOrchestrator(
        config=config,
        registry=registry,
        driver=driver,
        resolver=resolver,
        locks=locks,
        catalog=catalog,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        resolver=resolver,
        locks=locks,
        logger=logger,
        catalog=catalog,
        driver=driver,
        orchestrator=orchestrator,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mcsctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    try:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"mcsctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _exit_code_for(exc: Exception) -> ExitCode:
    """Return the exit code reported for *exc*."""
    if isinstance(exc, _VALIDATION_ERRORS):
        return ExitCode.VALIDATION
    if isinstance(exc, _ENVIRONMENT_ERRORS):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _fail(op: OperationScope, exc: Exception, *, prefix: str | None = None) -> NoReturn:
    message = f"{prefix}: {exc}" if prefix else str(exc)
    errors = [message]
    if exc.__cause__ is not None:
        errors.append(f"cause: {exc.__cause__}")
    _command_error(op, message, rc=int(_exit_code_for(exc)), errors=errors)


def _server_payload(state: ServerState) -> dict[str, object]:
    payload = state.config.to_dict()
    payload["runtime"] = state.runtime.value
    payload["state"] = "INCONSISTENT" if state.inconsistent else state.lifecycle.value
    return payload


def _record_payload(record: BackupRecord) -> dict[str, object]:
    return record.to_dict()


def _state_label(state: ServerState) -> str:
    if state.inconsistent:
        return "[red]INCONSISTENT[/red]"
    styles = {
        "RUNNING": "green",
        "STOPPED": "yellow",
        "PROVISIONED": "cyan",
        "ERROR": "red",
    }
    value = state.lifecycle.value
    style = styles.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _report_bulk(op: OperationScope, verb: str, outcomes: list[BulkOutcome]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Server", style="bold")
    table.add_column("Result")
    for outcome in outcomes:
        style = "green" if outcome.ok else "red"
        table.add_row(outcome.name, f"[{style}]{outcome.message}[/{style}]")
    if not outcomes:
        console.print("[yellow]No servers registered.[/yellow]")
        op.success(f"No servers to {verb}.", changed=0)
        return
    console.print(table)
    failures = [outcome for outcome in outcomes if not outcome.ok]
    context = {"results": {outcome.name: outcome.message for outcome in outcomes}}
    if failures:
        worst = max(
            int(_exit_code_for(outcome.error)) if outcome.error else int(ExitCode.PROVIDER)
            for outcome in failures
        )
        op.error(
            f"Failed to {verb} {len(failures)} of {len(outcomes)} servers.",
            errors=[f"{outcome.name}: {outcome.message}" for outcome in failures],
            rc=worst,
            context=context,
        )
        raise typer.Exit(code=worst)
    op.success(f"Bulk {verb} completed.", changed=len(outcomes), context=context)


# ----------------------------------------------------------------------
# Server commands
# ----------------------------------------------------------------------
@app.command()
def create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Unique server name (letters, digits, '-', '_')."),
    server_type: str | None = typer.Option(
        None,
        "--type",
        "-t",
        help="Server type: VANILLA, PAPER, FORGE, FABRIC, SPIGOT or PURPUR.",
    ),
    version: str | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Version tag: LATEST, SNAPSHOT or an explicit version.",
    ),
    memory: str | None = typer.Option(None, "--memory", "-m", help="JVM heap size, e.g. 2G."),
    port: int | None = typer.Option(None, "--port", "-p", help="Host port to publish."),
    java_args: str | None = typer.Option(None, "--java-args", help="Extra JVM options."),
    loader_version: str | None = typer.Option(
        None,
        "--loader-version",
        help="Pin the FORGE/FABRIC loader version.",
    ),
    extra_args: list[str] = typer.Option(
        [],
        "--arg",
        help="Extra server argument (repeatable).",
    ),
    accept_eula: bool = typer.Option(
        False,
        "--accept-eula",
        "--yes",
        "-y",
        help=f"Accept the Minecraft EULA ({EULA_URL}) without prompting.",
    ),
    start: bool = typer.Option(False, "--start", help="Start the server once provisioned."),
) -> None:
    """Create and provision a new server container."""
    runtime = _get_runtime(ctx)
    defaults = runtime.config.defaults
    if server_type is None:
        server_type = typer.prompt(
            "Server type (" + ", ".join(member.value for member in ServerType) + ")",
            default=ServerType.VANILLA.value,
        )
    request_args = {
        "name": name,
        "type": server_type,
        "version": version or defaults.version,
        "memory": memory or defaults.memory,
        "port": port if port is not None else defaults.port,
        "start": start,
    }
    with runtime.logger.operation(
        "server create",
        args=request_args,
        target={"kind": "server", "name": name},
    ) as op:
        if not accept_eula:
            accept_eula = typer.confirm(
                f"Do you agree to the Minecraft EULA? ({EULA_URL})",
                default=False,
            )
        request = CreateRequest(
            name=name,
            server_type=str(server_type),
            version=version or defaults.version,
            memory=memory or defaults.memory,
            port=port if port is not None else defaults.port,
            java_args=java_args or defaults.java_args,
            loader_version=loader_version,
            extra_args=tuple(extra_args),
            accept_eula=accept_eula,
        )
        try:
            config = runtime.orchestrator.create(request)
        except Exception as exc:
            if isinstance(exc, (ValidationError, DuplicateNameError)):
                op.add_step("validate", status="failed", detail=str(exc))
            _fail(op, exc)
        resolved = config.resolved
        op.add_step(
            "resolver.resolve",
            status="success",
            detail=f"{config.version} -> {resolved.version if resolved else config.version}",
        )
        op.add_step("driver.provision", status="success", detail=f"port={config.port}")
        detail = ""
        if resolved is not None:
            build = f", build {resolved.build}" if resolved.build else ""
            detail = f" ({resolved.version}{build})"
        console.print(
            f"[green]Server '{name}' created[/green]: {config.server_type.value} "
            f"{config.version}{detail} on port {config.port}."
        )
        console.print(f"Data directory: {runtime.orchestrator.data_dir(name)}")

        if start:
            try:
                runtime.orchestrator.start(name)
            except Exception as exc:
                _fail(op, exc, prefix="Server created but failed to start")
            op.add_step("driver.start", status="success")
            console.print(f"[green]Server '{name}' is running.[/green]")

        op.success(
            "Server created.",
            changed=3 if start else 2,
            context={"server": config.to_dict()},
        )


@app.command("list")
def list_servers(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered servers with their live state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server list",
        args={"json": json_output},
        target={"kind": "server", "scope": "registry"},
    ) as op:
        try:
            states = runtime.orchestrator.observe_all()
        except Exception as exc:
            _fail(op, exc)

        inconsistent = [state.name for state in states if state.inconsistent]
        if json_output:
            console.print_json(data={"servers": [_server_payload(state) for state in states]})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Name", style="bold")
            table.add_column("Type")
            table.add_column("Version")
            table.add_column("Port")
            table.add_column("Memory")
            table.add_column("State")
            table.add_column("Created")
            table.add_column("Last Started")
            if not states:
                table.add_row("(none)", "", "", "", "", "", "", "")
            for state in states:
                config = state.config
                version = config.version
                if config.resolved and config.resolved.version != config.version:
                    version = f"{config.version} ({config.resolved.version})"
                table.add_row(
                    config.name,
                    config.server_type.value,
                    version,
                    str(config.port),
                    config.memory,
                    _state_label(state),
                    config.created_at,
                    config.last_started_at or "-",
                )
            console.print(table)

        if inconsistent:
            op.warning(
                "Registered servers without containers detected.",
                warnings=[f"{name}: container missing" for name in inconsistent],
            )
        else:
            op.success("Reported server list.", changed=0)


@app.command()
def start(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Server to start (all when omitted)."),
) -> None:
    """Start one server, or every registered server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server start",
        args={"name": name},
        target={"kind": "server", "name": name or "*"},
    ) as op:
        if name is None:
            _report_bulk(op, "start", runtime.orchestrator.start_all())
            return
        try:
            result = runtime.orchestrator.start(name)
        except Exception as exc:
            _fail(op, exc)
        if not result.changed:
            console.print(f"[yellow]Server '{name}' is already running.[/yellow]")
            op.success("Server already running.", changed=0)
            return
        op.add_step("driver.start", status="success", detail=f"checks={result.attempts}")
        console.print(f"[green]Server '{name}' started.[/green]")
        op.success("Server started.", changed=1)


@app.command()
def stop(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Server to stop (all when omitted)."),
) -> None:
    """Stop one server, or every registered server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server stop",
        args={"name": name},
        target={"kind": "server", "name": name or "*"},
    ) as op:
        if name is None:
            _report_bulk(op, "stop", runtime.orchestrator.stop_all())
            return
        try:
            result = runtime.orchestrator.stop(name)
        except Exception as exc:
            _fail(op, exc)
        if not result.changed:
            console.print(f"[yellow]Server '{name}' is already stopped.[/yellow]")
            op.success("Server already stopped.", changed=0)
            return
        if result.degraded:
            op.add_step("driver.stop", status="warning", detail="forced")
            console.print(
                f"[yellow]Server '{name}' did not stop gracefully and was forced down.[/yellow]"
            )
            op.warning(
                "Server stopped with a forced kill.",
                warnings=["graceful stop timed out"],
                changed=1,
            )
            return
        op.add_step("driver.stop", status="success")
        console.print(f"[green]Server '{name}' stopped.[/green]")
        op.success("Server stopped.", changed=1)


@app.command()
def logs(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Server to read logs for."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep streaming new lines."),
    tail: int | None = typer.Option(
        None,
        "--tail",
        "-n",
        min=1,
        help="Only show the last N lines.",
    ),
) -> None:
    """Print (or follow) a server's log."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server logs",
        args={"name": name, "follow": follow, "tail": tail},
        target={"kind": "server", "name": name},
    ) as op:
        try:
            stream = runtime.orchestrator.logs(name, follow=follow, tail=tail)
        except Exception as exc:
            _fail(op, exc)
        lines = 0
        with stream:
            try:
                for line in stream:
                    console.print(line, markup=False, highlight=False)
                    lines += 1
            except KeyboardInterrupt:
                stream.cancel()
                op.add_step("stream.cancel", status="success", detail="interrupted")
        op.success("Streamed server logs.", changed=0, context={"lines": lines})


@app.command("console")
def console_attach(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Running server to attach to."),
) -> None:
    """Attach to a running server's console (type 'exit' or Ctrl-D to detach)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server console",
        args={"name": name},
        target={"kind": "server", "name": name},
    ) as op:
        try:
            session = runtime.orchestrator.console(name)
        except Exception as exc:
            _fail(op, exc)

        def _pump() -> None:
            for line in session:
                console.print(line, markup=False, highlight=False)

        reader = threading.Thread(target=_pump, name=f"console-{name}", daemon=True)
        sent = 0
        console.print(f"[cyan]Attached to '{name}'. Type 'exit' or press Ctrl-D to detach.[/cyan]")
        with session:
            reader.start()
            while True:
                try:
                    line = input()
                except (EOFError, KeyboardInterrupt):
                    break
                if line.strip() in {"exit", "detach"}:
                    break
                session.send(line)
                sent += 1
        reader.join(timeout=1.0)
        console.print(f"[cyan]Detached from '{name}'.[/cyan]")
        op.success("Console session closed.", changed=0, context={"commands": sent})


@app.command()
def remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Server to remove."),
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation."),
    keep_data: bool = typer.Option(
        False,
        "--keep-data",
        help="Keep the server's data directory on disk.",
    ),
) -> None:
    """Remove a stopped server's container, registry entry and data."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server remove",
        args={"name": name, "force": force, "keep_data": keep_data},
        target={"kind": "server", "name": name},
    ) as op:
        if not force:
            suffix = "" if keep_data else " and delete its data"
            if not typer.confirm(f"Remove server '{name}'{suffix}?", default=False):
                console.print("[yellow]Aborted.[/yellow]")
                op.success("Removal aborted by user.", changed=0)
                return
        try:
            result = runtime.orchestrator.remove(name, keep_data=keep_data)
        except Exception as exc:
            _fail(op, exc)
        for warning in result.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        console.print(f"[green]Server '{name}' removed.[/green]")
        if result.warnings:
            op.warning("Server removed with warnings.", warnings=list(result.warnings), changed=2)
        else:
            op.success("Server removed.", changed=3)


# ----------------------------------------------------------------------
# Backup commands
# ----------------------------------------------------------------------
@app.command()
def backup(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Stopped server to back up."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Archive a stopped server's data directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"name": name, "json": json_output},
        target={"kind": "server", "name": name},
    ) as op:
        try:
            record = runtime.orchestrator.backup(name)
        except Exception as exc:
            _fail(op, exc)
        op.add_step("archive.create", status="success", detail=str(record.path))
        if json_output:
            console.print_json(data=_record_payload(record))
        else:
            console.print(
                f"[green]Backup {record.id} created[/green]: {record.path} "
                f"({_format_size(record.size_bytes)}, sha256 {record.checksum[:12]}...)"
            )
        op.success(
            "Backup created.",
            changed=1,
            backups=[record.id],
            context=_record_payload(record),
        )


@app.command("backups")
def list_backups(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Only list backups of this server."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List catalogued backups, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"name": name, "json": json_output},
        target={"kind": "backup", "scope": "catalog"},
    ) as op:
        try:
            records = runtime.orchestrator.backups.list(name)
        except BackupCatalogError as exc:
            _fail(op, exc, prefix="Failed to read backup index")

        if json_output:
            console.print_json(data={"backups": [_record_payload(record) for record in records]})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Server")
        table.add_column("Created At")
        table.add_column("Size")
        table.add_column("Path")
        if not records:
            table.add_row("(none)", "", "", "", "")
        for record in records:
            table.add_row(
                record.id,
                record.server,
                record.created_at,
                _format_size(record.size_bytes),
                str(record.path),
            )
        console.print(table)
        op.success("Reported backup list.", changed=0)


@app.command("delete-backup")
def delete_backup(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Backup identifier to delete."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete a backup archive and its catalog entry."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup delete",
        args={"id": backup_id, "yes": yes},
        target={"kind": "backup", "id": backup_id},
    ) as op:
        if not yes and not typer.confirm(f"Delete backup '{backup_id}'?", default=False):
            console.print("[yellow]Aborted.[/yellow]")
            op.success("Deletion aborted by user.", changed=0)
            return
        try:
            record = runtime.orchestrator.backups.delete(backup_id)
        except Exception as exc:
            _fail(op, exc)
        console.print(f"[green]Backup {record.id} deleted.[/green]")
        op.success("Backup deleted.", changed=1, backups=[record.id])


@app.command()
def restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Server whose data will be replaced."),
    archive: Path = typer.Argument(..., dir_okay=False, help="Backup archive to restore."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    start_after: bool = typer.Option(False, "--start", help="Start the server afterwards."),
) -> None:
    """Replace a stopped server's data with a verified backup archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={"name": name, "archive": archive, "start": start_after},
        target={"kind": "server", "name": name},
    ) as op:
        if not yes and not typer.confirm(
            f"Overwrite the data of '{name}' with {archive}?",
            default=False,
        ):
            console.print("[yellow]Aborted.[/yellow]")
            op.success("Restore aborted by user.", changed=0)
            return
        try:
            record = runtime.orchestrator.restore(name, archive)
        except Exception as exc:
            _fail(op, exc, prefix="Restore failed")
        op.add_step("archive.verify", status="success", detail=record.checksum)
        op.add_step("data.swap", status="success")
        console.print(f"[green]Restored '{name}' from {archive}.[/green]")
        if start_after:
            try:
                runtime.orchestrator.start(name)
            except Exception as exc:
                _fail(op, exc, prefix="Restored but failed to start")
            op.add_step("driver.start", status="success")
            console.print(f"[green]Server '{name}' is running.[/green]")
        op.success("Backup restored.", changed=2 if start_after else 1, backups=[record.id])


# ----------------------------------------------------------------------
# Versions
# ----------------------------------------------------------------------
@app.command()
def versions(
    ctx: typer.Context,
    server_type: str | None = typer.Option(None, "--type", "-t", help="Server type to query."),
    snapshots: bool = typer.Option(
        False,
        "--snapshots",
        help="Include snapshots and pre-releases.",
    ),
    resolve: str | None = typer.Option(
        None,
        "--resolve",
        help="Preview what a tag resolves to (requires --type).",
    ),
    limit: int = typer.Option(20, "--limit", min=1, help="Maximum versions to list."),
) -> None:
    """Show server types and version tags, or query an upstream manifest."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "versions",
        args={"type": server_type, "snapshots": snapshots, "resolve": resolve},
        target={"kind": "versions", "type": server_type or "*"},
    ) as op:
        if server_type is None:
            if resolve:
                _command_error(op, "--resolve requires --type.", rc=int(ExitCode.VALIDATION))
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Type", style="bold")
            table.add_column("Accepted version tags")
            for member in ServerType:
                table.add_row(member.value, TAG_FORMATS[member])
            console.print(table)
            op.success("Reported server types.", changed=0)
            return

        try:
            kind = ServerType.parse(server_type)
        except ValueError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))

        if resolve:
            try:
                resolved = runtime.resolver.resolve(kind, resolve)
            except Exception as exc:
                _fail(op, exc)
            table = Table(show_header=False)
            table.add_column("Field", style="bold")
            table.add_column("Value")
            table.add_row("Type", kind.value)
            table.add_row("Tag", resolved.tag)
            table.add_row("Version", resolved.version)
            table.add_row("Build", resolved.build or "-")
            table.add_row("Artifact", resolved.url)
            checksum = resolved.checksum or {}
            table.add_row(
                "Checksum",
                f"{checksum.get('algorithm')}:{checksum.get('value')}" if checksum else "-",
            )
            console.print(table)
            op.success("Resolved version tag.", changed=0, context=resolved.to_dict())
            return

        try:
            available = runtime.resolver.available_versions(kind, include_snapshots=snapshots)
        except Exception as exc:
            _fail(op, exc)
        shown = available[:limit]
        console.print(f"[bold]{kind.value}[/bold] versions (newest first):")
        for item in shown:
            console.print(f"  {item}")
        if len(available) > len(shown):
            console.print(f"  ... and {len(available) - len(shown)} more (use --limit).")
        op.success(
            "Reported available versions.",
            changed=0,
            context={"type": kind.value, "count": len(available)},
        )


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
