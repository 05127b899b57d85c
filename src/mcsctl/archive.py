"""Archive helpers used by the backup and restore workflows."""
from __future__ import annotations

import hashlib
import os
import tarfile
from pathlib import Path, PurePosixPath

_CHUNK_SIZE = 1024 * 1024

_WRITE_MODES = {
    "gzip": "w:gz",
    "bzip2": "w:bz2",
    "xz": "w:xz",
    "none": "w",
}


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be written, read or extracted."""


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    if algorithm == "bzip2":
        return "tar.bz2"
    if algorithm == "xz":
        return "tar.xz"
    return "tar"


def create_archive(
    source_dir: Path,
    archive_path: Path,
    algorithm: str,
    compression_level: int | None,
) -> None:
    """Archive *source_dir* (as its own top-level member) into *archive_path*."""
    mode = _WRITE_MODES.get(algorithm)
    if mode is None:
        raise ArchiveError(f"Unsupported compression algorithm '{algorithm}'.")
    options: dict[str, int] = {}
    if compression_level is not None:
        if algorithm in {"gzip", "bzip2"}:
            options["compresslevel"] = compression_level
        elif algorithm == "xz":
            options["preset"] = compression_level
    try:
        with tarfile.open(archive_path, mode, **options) as tar:  # type: ignore[call-overload]
            tar.add(source_dir, arcname=source_dir.name)
    except (OSError, tarfile.TarError) as exc:
        raise ArchiveError(f"Failed to write archive {archive_path}: {exc}") from exc

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def extract_archive(archive_path: Path, destination: Path) -> list[str]:
    """Extract *archive_path* into *destination* and return its top-level names.

    Members with absolute paths, ``..`` components or links escaping the
    destination are rejected before anything is written.
    """
    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            members = tar.getmembers()
            for member in members:
                _check_member(member, root)
            tar.extractall(destination, members=members, filter="data")
    except (OSError, EOFError, tarfile.TarError) as exc:
        raise ArchiveError(f"Failed to extract archive {archive_path}: {exc}") from exc
    tops = {PurePosixPath(member.name).parts[0] for member in members if member.name}
    return sorted(top for top in tops if top not in {".", ""})


def _check_member(member: tarfile.TarInfo, root: Path) -> None:
    name = PurePosixPath(member.name)
    if name.is_absolute() or ".." in name.parts:
        raise ArchiveError(f"Refusing unsafe archive member '{member.name}'.")
    target = (root / name).resolve()
    if not target.is_relative_to(root):
        raise ArchiveError(f"Archive member '{member.name}' escapes the destination.")
    if member.issym() or member.islnk():
        link = PurePosixPath(member.linkname)
        base = root if member.islnk() else (root / name).parent
        if link.is_absolute() or not (base / link).resolve().is_relative_to(root):
            raise ArchiveError(
                f"Archive link '{member.name}' points outside the destination."
            )


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def compute_tree_digest(root: Path) -> str:
    """Return a SHA-256 digest over the names, link targets and bytes under *root*.

    The digest is independent of timestamps and ownership, so an extracted
    copy of an archived tree hashes identically to the original.
    """
    digest = hashlib.sha256()
    if not root.exists():
        return digest.hexdigest()
    for path in sorted(root.rglob("*"), key=lambda item: item.relative_to(root).as_posix()):
        relative = path.relative_to(root).as_posix()
        if path.is_symlink():
            digest.update(f"L {relative} -> {os.readlink(path)}\n".encode())
        elif path.is_dir():
            digest.update(f"D {relative}\n".encode())
        elif path.is_file():
            digest.update(f"F {relative} {path.stat().st_size}\n".encode())
            digest.update(compute_checksum(path).encode("ascii"))
    return digest.hexdigest()


def checksum_path_for(archive_path: Path) -> Path:
    """Return the ``<archive>.sha256`` sidecar path for *archive_path*."""
    return archive_path.with_name(f"{archive_path.name}.sha256")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = checksum_path_for(archive_path)
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def read_checksum_file(archive_path: Path) -> str | None:
    """Return the checksum recorded in the sidecar of *archive_path*, if any."""
    checksum_path = checksum_path_for(archive_path)
    if not checksum_path.exists():
        return None
    text = checksum_path.read_text(encoding="utf-8").strip()
    if not text:
        return None
    return text.split()[0].lower()


__all__ = [
    "ArchiveError",
    "checksum_path_for",
    "compression_extension",
    "compute_checksum",
    "compute_tree_digest",
    "create_archive",
    "extract_archive",
    "read_checksum_file",
    "write_checksum_file",
]
