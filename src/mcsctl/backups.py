"""Backup catalog and the engine that snapshots and restores server data."""
from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .archive import (
    ArchiveError,
    compression_extension,
    compute_checksum,
    compute_tree_digest,
    create_archive,
    extract_archive,
    read_checksum_file,
    write_checksum_file,
)
from .models import RuntimeStatus, now_iso

LOGGER = logging.getLogger(__name__)

_RESTORABLE = frozenset({RuntimeStatus.STOPPED, RuntimeStatus.CREATED, RuntimeStatus.ABSENT})


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupServerRunningError(BackupError):
    """Raised when a backup is requested while the server is running."""


class BackupIOError(BackupError):
    """Raised when the archive cannot be produced or stored."""


class BackupCatalogError(BackupError):
    """Raised when backup index interactions fail."""


class BackupNotFoundError(BackupCatalogError):
    """Raised when a backup identifier is not present in the catalog."""


class RestoreError(RuntimeError):
    """Raised when restore operations fail."""


class RestoreServerRunningError(RestoreError):
    """Raised when restoring into a server that is not stopped."""


class RestoreCorruptError(RestoreError):
    """Raised when an archive fails integrity verification."""


class RestoreIOError(RestoreError):
    """Raised when the archive cannot be read or the data path swapped."""


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupCatalogError(f"{label} must be a non-empty string.")
    return normalised


@dataclass(frozen=True, slots=True)
class BackupRecord:
    """Immutable catalog entry describing one archive."""

    id: str
    server: str
    created_at: str
    path: Path
    size_bytes: int
    checksum: str
    content_checksum: str | None = None
    algorithm: str = "gzip"
    status: str = "available"

    def to_dict(self) -> dict[str, object]:
        """Return the JSON-serialisable entry for the backup index."""
        return {
            "id": self.id,
            "server": self.server,
            "created_at": self.created_at,
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "algorithm": self.algorithm,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "content_checksum": {"algorithm": "sha256-tree", "value": self.content_checksum}
            if self.content_checksum
            else None,
            "status": self.status,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> BackupRecord:
        """Rebuild a record from an index entry."""
        return cls(
            id=str(data["id"]),
            server=str(data["server"]),
            created_at=str(data.get("created_at") or ""),
            path=Path(str(data["path"])),
            size_bytes=int(data.get("size_bytes") or 0),
            checksum=_checksum_value(data.get("checksum")) or "",
            content_checksum=_checksum_value(data.get("content_checksum")),
            algorithm=str(data.get("algorithm") or "gzip"),
            status=str(data.get("status") or "available"),
        )


def _checksum_value(raw: object) -> str | None:
    if isinstance(raw, Mapping):
        value = raw.get("value")
        return str(value) if value else None
    if isinstance(raw, str) and raw:
        return raw
    return None


@dataclass(slots=True)
class BackupCatalog:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupCatalogError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupCatalogError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupCatalogError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupCatalogError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, record: BackupRecord) -> None:
        """Append *record* to the backups index."""
        entries = self._entries()
        entries.append(record.to_dict())
        self.write({"backups": entries})

    def list_records(self, server: str | None = None) -> list[BackupRecord]:
        """Return catalog records, optionally only those for *server*."""
        records: list[BackupRecord] = []
        for index, entry in enumerate(self._entries()):
            try:
                record = BackupRecord.from_mapping(entry)
            except (KeyError, TypeError, ValueError) as exc:
                raise BackupCatalogError(f"Backup index entry #{index} is invalid: {exc}") from exc
            if server is None or record.server == server:
                records.append(record)
        return records

    def find(self, backup_id: str) -> BackupRecord | None:
        """Return the record for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        for record in self.list_records():
            if record.id == normalized:
                return record
        return None

    def find_by_path(self, archive_path: Path) -> BackupRecord | None:
        """Return the record whose archive lives at *archive_path*."""
        target = archive_path.expanduser().resolve()
        for record in self.list_records():
            if record.path.expanduser().resolve() == target:
                return record
        return None

    def remove(self, backup_id: str) -> BackupRecord:
        """Drop *backup_id* from the index and return the removed record."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        removed: BackupRecord | None = None
        remaining: list[dict[str, object]] = []
        for entry in self._entries():
            if removed is None and str(entry.get("id", "")).strip() == normalized:
                removed = BackupRecord.from_mapping(entry)
                continue
            remaining.append(entry)
        if removed is None:
            raise BackupNotFoundError(f"Backup '{normalized}' not found in index.")
        self.write({"backups": remaining})
        return removed

    def generate_identifier(self, server: str) -> str:
        """Return a unique backup identifier for *server*."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        return f"{timestamp}-{server}-{secrets.token_hex(3)}"

    def archive_directory(self, server: str) -> Path:
        """Return the directory that should contain archives for *server*."""
        return self.root / server

    def _entries(self) -> list[dict[str, object]]:
        backups = self.read().get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries


class BackupEngine:
    """Create and restore archives of server data directories.

    The engine never trusts a cached status: *status_of* is queried at the
    moment of every backup or restore.
    """

    def __init__(
        self,
        catalog: BackupCatalog,
        *,
        data_dir_for: Callable[[str], Path],
        status_of: Callable[[str], RuntimeStatus],
        compression: str = "gzip",
        compression_level: int | None = None,
    ) -> None:
        """Bind the engine to its catalog and server lookups."""
        self.catalog = catalog
        self._data_dir_for = data_dir_for
        self._status_of = status_of
        self.compression = compression
        self.compression_level = compression_level

    # ------------------------------------------------------------------
    def backup(self, name: str) -> BackupRecord:
        """Archive the data directory of *name* and append a catalog record."""
        status = self._status_of(name)
        if status is RuntimeStatus.RUNNING:
            raise BackupServerRunningError(
                f"Server '{name}' is running; stop it before taking a backup."
            )
        data_dir = self._data_dir_for(name)
        if not data_dir.is_dir():
            raise BackupIOError(f"Data directory {data_dir} for '{name}' does not exist.")

        self.catalog.ensure_root()
        archive_dir = self.catalog.archive_directory(name)
        stamp = datetime.now(tz=UTC).strftime("%Y%m%d_%H%M%S")
        extension = compression_extension(self.compression)
        try:
            archive_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupIOError(f"Failed to prepare {archive_dir}: {exc}") from exc
        archive_path = archive_dir / f"{name}_{stamp}.{extension}"
        counter = 1
        while archive_path.exists():
            archive_path = archive_dir / f"{name}_{stamp}_{counter}.{extension}"
            counter += 1
        partial = archive_path.with_name(f".{archive_path.name}.partial")

        try:
            content_checksum = compute_tree_digest(data_dir)
            create_archive(data_dir, partial, self.compression, self.compression_level)
            os.replace(partial, archive_path)
            checksum = compute_checksum(archive_path)
            write_checksum_file(archive_path, checksum)
            size_bytes = archive_path.stat().st_size
        except (ArchiveError, OSError) as exc:
            partial.unlink(missing_ok=True)
            archive_path.unlink(missing_ok=True)
            raise BackupIOError(f"Backup of '{name}' failed: {exc}") from exc

        record = BackupRecord(
            id=self.catalog.generate_identifier(name),
            server=name,
            created_at=now_iso(),
            path=archive_path,
            size_bytes=size_bytes,
            checksum=checksum,
            content_checksum=content_checksum,
            algorithm=self.compression,
        )
        self.catalog.append(record)
        LOGGER.info("Backup %s written to %s", record.id, archive_path)
        return record

    def restore(self, name: str, archive_path: Path) -> BackupRecord:
        """Replace the data directory of *name* with the contents of *archive_path*.

        The archive is verified and fully extracted into a staging directory
        before the live data path is touched. The previous data path is moved
        aside and deleted only once the staged tree is in place.
        """
        status = self._status_of(name)
        if status not in _RESTORABLE:
            raise RestoreServerRunningError(
                f"Server '{name}' is {status.value}; stop it before restoring."
            )
        archive_path = archive_path.expanduser()
        if not archive_path.is_file():
            raise RestoreIOError(f"Archive {archive_path} does not exist.")

        record = self._record_for(name, archive_path)
        try:
            actual = compute_checksum(archive_path)
        except OSError as exc:
            raise RestoreIOError(f"Cannot read archive {archive_path}: {exc}") from exc
        if actual != record.checksum:
            raise RestoreCorruptError(
                f"Archive checksum mismatch for {archive_path}: "
                f"expected {record.checksum}, got {actual}."
            )

        data_dir = self._data_dir_for(name)
        try:
            data_dir.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=".restore-", dir=str(data_dir.parent)))
        except OSError as exc:
            raise RestoreIOError(f"Cannot prepare staging area for '{name}': {exc}") from exc

        try:
            try:
                tops = extract_archive(archive_path, staging)
            except ArchiveError as exc:
                raise RestoreCorruptError(str(exc)) from exc
            if len(tops) != 1 or not (staging / tops[0]).is_dir():
                raise RestoreCorruptError(
                    f"Archive {archive_path} must contain exactly one top-level directory."
                )
            staged_tree = staging / tops[0]
            if record.content_checksum:
                restored = compute_tree_digest(staged_tree)
                if restored != record.content_checksum:
                    raise RestoreCorruptError(
                        f"Restored content digest mismatch for {archive_path}."
                    )
            self._swap_in(staged_tree, data_dir)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        LOGGER.info("Restored '%s' from %s", name, archive_path)
        return record

    def list(self, server: str | None = None) -> list[BackupRecord]:
        """Return catalog records, newest first."""
        records = self.catalog.list_records(server)
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    def delete(self, backup_id: str) -> BackupRecord:
        """Delete *backup_id* from the catalog along with its archive files."""
        record = self.catalog.remove(backup_id)
        for path in (record.path, record.path.with_name(f"{record.path.name}.sha256")):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("Could not delete %s: %s", path, exc)
        return record

    # ------------------------------------------------------------------
    def _record_for(self, name: str, archive_path: Path) -> BackupRecord:
        record = self.catalog.find_by_path(archive_path)
        if record is not None:
            return record
        sidecar = read_checksum_file(archive_path)
        if sidecar is None:
            raise RestoreCorruptError(
                f"No recorded checksum for {archive_path}: not in the catalog and no "
                ".sha256 file beside it."
            )
        return BackupRecord(
            id=f"external-{archive_path.name}",
            server=name,
            created_at=now_iso(),
            path=archive_path,
            size_bytes=archive_path.stat().st_size,
            checksum=sidecar,
            algorithm="unknown",
            status="external",
        )

    @staticmethod
    def _swap_in(staged_tree: Path, data_dir: Path) -> None:
        aside: Path | None = None
        try:
            if data_dir.exists():
                aside = data_dir.with_name(
                    f".{data_dir.name}.pre-restore-{secrets.token_hex(3)}"
                )
                os.replace(data_dir, aside)
            os.replace(staged_tree, data_dir)
        except OSError as exc:
            if aside is not None and aside.exists() and not data_dir.exists():
                os.replace(aside, data_dir)
            raise RestoreIOError(f"Failed to swap restored data into {data_dir}: {exc}") from exc
        if aside is not None:
            shutil.rmtree(aside, ignore_errors=True)


__all__ = [
    "BackupCatalog",
    "BackupCatalogError",
    "BackupEngine",
    "BackupError",
    "BackupIOError",
    "BackupNotFoundError",
    "BackupRecord",
    "BackupServerRunningError",
    "RestoreCorruptError",
    "RestoreError",
    "RestoreIOError",
    "RestoreServerRunningError",
]
