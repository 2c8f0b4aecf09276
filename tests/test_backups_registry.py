"""Tests for the BackupsRegistry helpers and backup archives."""
from __future__ import annotations

import zipfile
from datetime import datetime
from pathlib import Path

import pytest

from sitedeploy.archive import (
    compute_checksum,
    create_archive,
    directory_has_entries,
    write_checksum_file,
)
from sitedeploy.backups import (
    BackupEntryBuilder,
    BackupError,
    BackupRegistryError,
    BackupsRegistry,
)


def test_backups_registry_append_and_read(tmp_path: Path) -> None:
    """Append persists entries in backups.json."""
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")
    registry.ensure_root()

    entry = BackupEntryBuilder(
        site="alpha",
        archive_path=tmp_path / "backups" / "alpha" / "alpha_backup_20240101_000000.zip",
        source=tmp_path / "sites" / "alpha",
        checksum="deadbeef",
        size_bytes=1234,
        entries=3,
        package=tmp_path / "release.zip",
    ).build(backup_id="alpha-demo")

    registry.append(entry)
    registry.append({"id": "second", "site": "beta"})

    entries = registry.list_entries()
    assert [item["id"] for item in entries] == ["alpha-demo", "second"]
    assert entries[0]["checksum"] == {"algorithm": "sha256", "value": "deadbeef"}
    assert entries[0]["package"] == str(tmp_path / "release.zip")
    assert str(entries[0]["created_at"]).endswith("Z")


def test_backups_registry_generates_identifier(tmp_path: Path) -> None:
    """Generated backup identifiers include timestamp and site slug."""
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")
    backup_id = registry.generate_identifier("alpha site")
    assert backup_id.startswith("20")
    assert "alpha-site" in backup_id


def test_archive_path_uses_site_folder_and_timestamp(tmp_path: Path) -> None:
    """Archives are named ``<site>_backup_<stamp>.zip`` inside a per-site folder."""
    registry = BackupsRegistry.beside_package(tmp_path / "drop" / "release.zip")

    path = registry.archive_path("alpha", now=datetime(2024, 3, 9, 14, 5, 7))

    assert path == (tmp_path / "drop").resolve() / "Backups" / "alpha" / (
        "alpha_backup_20240309_140507.zip"
    )
    assert registry.index == registry.root / "backups.json"


def test_corrupted_index_raises(tmp_path: Path) -> None:
    """A broken index surfaces as BackupRegistryError."""
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")
    registry.ensure_root()
    registry.index.write_text("{not json", encoding="utf-8")

    with pytest.raises(BackupRegistryError):
        registry.read()


def test_create_archive_stores_contents_without_wrapping_directory(tmp_path: Path) -> None:
    """The archive holds the tree relative to the source directory."""
    source = tmp_path / "site"
    (source / "bin").mkdir(parents=True)
    (source / "empty").mkdir()
    (source / "index.html").write_text("home")
    (source / "bin" / "app.dll").write_bytes(b"\x00\x01")
    archive_path = tmp_path / "out" / "site.zip"

    written = create_archive(source, archive_path)

    with zipfile.ZipFile(archive_path) as archive:
        names = sorted(archive.namelist())
    assert names == ["bin/app.dll", "empty/", "index.html"]
    assert written == 3
    assert (archive_path.stat().st_mode & 0o777) == 0o640


def test_checksum_file_written_beside_archive(tmp_path: Path) -> None:
    """Checksum side files carry the digest and archive name."""
    archive_path = tmp_path / "a.zip"
    archive_path.write_bytes(b"payload")

    checksum = compute_checksum(archive_path)
    checksum_path = write_checksum_file(archive_path, checksum)

    assert checksum_path.name == "a.zip.sha256"
    assert checksum_path.read_text(encoding="utf-8") == f"{checksum}  a.zip\n"


def test_directory_has_entries(tmp_path: Path) -> None:
    """Missing and empty directories report no entries."""
    assert directory_has_entries(tmp_path / "missing") is False
    empty = tmp_path / "empty"
    empty.mkdir()
    assert directory_has_entries(empty) is False
    (empty / "x").write_text("x")
    assert directory_has_entries(empty) is True


def test_create_archive_refuses_existing_archive(tmp_path: Path) -> None:
    """An archive already on disk is left as it was."""
    source = tmp_path / "site"
    source.mkdir()
    (source / "index.html").write_text("home")
    archive_path = tmp_path / "out" / "site.zip"
    archive_path.parent.mkdir()
    archive_path.write_bytes(b"earlier snapshot")

    with pytest.raises(BackupError, match="already exists"):
        create_archive(source, archive_path)

    assert archive_path.read_bytes() == b"earlier snapshot"


def test_archive_directory_is_per_site(tmp_path: Path) -> None:
    """Each site gets its own folder beneath the backup root."""
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")

    assert registry.archive_directory("alpha") == tmp_path / "backups" / "alpha"
    assert registry.archive_directory("my site") == tmp_path / "backups" / "my-site"
    assert registry.archive_path("my site").parent == registry.archive_directory("my site")


def test_entries_for_site_and_find_by_id(tmp_path: Path) -> None:
    """Index lookups filter by site and resolve identifiers."""
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")
    registry.append({"id": "a-1", "site": "alpha"})
    registry.append({"id": "b-1", "site": "beta"})
    registry.append({"id": "a-2", "site": "Alpha"})

    assert [entry["id"] for entry in registry.entries_for_site("ALPHA")] == ["a-1", "a-2"]
    assert registry.entries_for_site("gamma") == []
    assert registry.find_by_id("b-1") == {"id": "b-1", "site": "beta"}
    assert registry.find_by_id("missing") is None


@pytest.mark.parametrize("blank", ["", "   "])
def test_index_lookups_reject_blank_keys(tmp_path: Path, blank: str) -> None:
    """Blank site names and identifiers are refused."""
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")

    with pytest.raises(BackupRegistryError):
        registry.entries_for_site(blank)
    with pytest.raises(BackupRegistryError):
        registry.find_by_id(blank)
