"""Archive helpers shared by backup workflows."""
from __future__ import annotations

import hashlib
import os
import zipfile
from pathlib import Path

from .backups import BackupError


def directory_has_entries(path: Path) -> bool:
    """Return True when *path* is a directory containing at least one entry."""
    if not path.is_dir():
        return False
    return any(path.iterdir())


def create_archive(source_dir: Path, archive_path: Path) -> int:
    """Zip the contents of *source_dir* into *archive_path*.

    Entries are stored relative to *source_dir* itself, so the archive does not
    wrap everything in a parent directory. Returns the number of entries
    written. An existing archive is never replaced; that raises
    :class:`BackupError` before anything is written.
    """
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    try:
        with zipfile.ZipFile(archive_path, "x", zipfile.ZIP_DEFLATED) as archive:
            for path in sorted(source_dir.rglob("*")):
                relative = path.relative_to(source_dir).as_posix()
                if path.is_dir():
                    # Keep empty directories so the snapshot is a faithful tree.
                    if not any(path.iterdir()):
                        archive.writestr(f"{relative}/", b"")
                        written += 1
                    continue
                archive.write(path, relative)
                written += 1
    except FileExistsError as exc:
        raise BackupError(f"Backup archive {archive_path} already exists.") from exc
    except OSError as exc:
        archive_path.unlink(missing_ok=True)
        raise BackupError(f"Failed to archive {source_dir}: {exc}") from exc

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass
    return written


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


__all__ = [
    "compute_checksum",
    "create_archive",
    "directory_has_entries",
    "write_checksum_file",
]
