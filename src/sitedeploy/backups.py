"""Where pre-deploy backups are written and how they are indexed.

Each redeploy that finds content in the site root leaves a ZIP snapshot at
``<root>/<site>/<site>_backup_<YYYYmmdd_HHMMSS>.zip``. By default ``<root>``
is a ``Backups`` folder beside the package being deployed. Snapshots are
recorded in a JSON index so operators can trace which package replaced which
tree.
"""
from __future__ import annotations

import json
import os
import secrets
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

BACKUPS_FOLDER = "Backups"
INDEX_FILENAME = "backups.json"


class BackupError(RuntimeError):
    """Raised when a backup snapshot cannot be produced."""


class BackupRegistryError(BackupError):
    """Raised when the backup index cannot be read or updated."""


def _safe_segment(value: str) -> str:
    return "".join(char if char.isalnum() or char in {"-", "_", "."} else "-" for char in value)


@dataclass(slots=True)
class BackupsRegistry:
    """Backup folder layout plus its JSON index."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Expand ``~`` in both paths."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    @classmethod
    def beside_package(cls, package_path: Path) -> BackupsRegistry:
        """Return a registry rooted in ``Backups/`` next to *package_path*."""
        root = package_path.expanduser().resolve().parent / BACKUPS_FOLDER
        return cls(root, root / INDEX_FILENAME)

    def ensure_root(self) -> None:
        """Create the backup root when missing."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def archive_directory(self, site: str) -> Path:
        """Return the per-site folder holding snapshots of *site*."""
        return self.root / _safe_segment(site)

    def archive_path(self, site: str, *, now: datetime | None = None) -> Path:
        """Return ``<site>_backup_<YYYYmmdd_HHMMSS>.zip`` inside the site folder.

        The timestamp uses local time to match what operators see on the host.
        """
        stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
        return self.archive_directory(site) / f"{_safe_segment(site)}_backup_{stamp}.zip"

    def generate_identifier(self, site: str) -> str:
        """Return a unique index identifier for a new snapshot of *site*."""
        stamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        return f"{stamp}-{_safe_segment(site)}-{secrets.token_hex(3)}"

    # Index ---------------------------------------------------------
    def read(self) -> dict[str, object]:
        """Return the parsed index, or an empty one when the file is missing."""
        try:
            raw = self.index.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {"backups": []}
        except OSError as exc:
            raise BackupRegistryError(f"Cannot read backup index {self.index}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def list_entries(self) -> list[dict[str, object]]:
        """Return index entries in the order they were recorded."""
        backups = self.read().get("backups")
        if not isinstance(backups, list):
            return []
        return [dict(item) for item in backups if isinstance(item, Mapping)]

    def entries_for_site(self, site: str) -> list[dict[str, object]]:
        """Return entries recorded for *site*, compared case-insensitively."""
        wanted = site.strip().lower()
        if not wanted:
            raise BackupRegistryError("Site name must be a non-empty string.")
        return [
            entry for entry in self.list_entries() if str(entry.get("site", "")).lower() == wanted
        ]

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry with identifier *backup_id*, if recorded."""
        wanted = backup_id.strip()
        if not wanted:
            raise BackupRegistryError("Backup identifier must be a non-empty string.")
        for entry in self.list_entries():
            if entry.get("id") == wanted:
                return entry
        return None

    def append(self, entry: Mapping[str, object]) -> None:
        """Record *entry* at the end of the index."""
        self._store({"backups": [*self.list_entries(), dict(entry)]})

    def _store(self, payload: Mapping[str, object]) -> None:
        self.index.parent.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(dir=str(self.index.parent), prefix=f".{self.index.name}.")
        staging = Path(name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
            os.replace(staging, self.index)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            staging.unlink(missing_ok=True)


@dataclass(slots=True)
class BackupEntryBuilder:
    """Describe one snapshot for the backup index."""

    site: str
    archive_path: Path
    source: Path
    checksum: str
    size_bytes: int
    entries: int
    package: Path | None = None

    def build(self, *, backup_id: str) -> dict[str, object]:
        """Return the JSON-serialisable index entry."""
        created_at = datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        entry: dict[str, object] = {
            "id": backup_id,
            "site": self.site,
            "created_at": created_at,
            "path": str(self.archive_path),
            "source": str(self.source),
            "size_bytes": self.size_bytes,
            "entries": self.entries,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
        }
        if self.package is not None:
            entry["package"] = str(self.package)
        return entry


__all__ = [
    "BACKUPS_FOLDER",
    "INDEX_FILENAME",
    "BackupEntryBuilder",
    "BackupError",
    "BackupRegistryError",
    "BackupsRegistry",
]
