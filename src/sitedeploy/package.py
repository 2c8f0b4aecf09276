"""Deployment package handling.

A deployment package is a zip archive whose payload lives under a single
top-level marker directory (``Publish/`` by default). Everything outside that
directory is ignored. Extraction is best-effort per entry: a file that cannot
be written is logged and the remaining entries are still processed.
"""
from __future__ import annotations

import shutil
import zipfile
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .outcome import DeploymentOutcome

DEFAULT_ROOT_MARKER = "Publish"
DEFAULT_PROTECTED_FILES: frozenset[str] = frozenset({"appsettings.json", "web.config"})

ProtectedPredicate = Callable[[Path], bool]


class PackageError(RuntimeError):
    """Raised when a deployment package cannot be located or read."""


@dataclass(frozen=True)
class ArchiveEntry:
    """Payload entry with the root marker stripped from its path."""

    relative_path: str
    is_directory: bool
    member: zipfile.ZipInfo

    @property
    def name(self) -> str:
        """Return the basename of the entry."""
        return PurePosixPath(self.relative_path).name


@dataclass(slots=True)
class ExtractionReport:
    """Counts of what happened during an extraction run."""

    extracted: list[str] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def normalise_protected(names: Iterable[str]) -> frozenset[str]:
    """Return a lower-cased set of protected basenames."""
    return frozenset(name.strip().lower() for name in names if name.strip())


def is_protected_file(
    name: str,
    protected: Iterable[str] = DEFAULT_PROTECTED_FILES,
) -> bool:
    """Return True when the basename of *name* is in the protected set."""
    basename = PurePosixPath(name.replace("\\", "/")).name
    return basename.lower() in normalise_protected(protected)


def skip_protected(protected: Iterable[str] = DEFAULT_PROTECTED_FILES) -> ProtectedPredicate:
    """Return a predicate that skips every protected file."""
    names = normalise_protected(protected)
    return lambda target: is_protected_file(target.name, names)


def skip_existing_protected(
    protected: Iterable[str] = DEFAULT_PROTECTED_FILES,
) -> ProtectedPredicate:
    """Return a predicate that skips protected files only when already on disk."""
    names = normalise_protected(protected)
    return lambda target: is_protected_file(target.name, names) and _exists_ignoring_case(target)


def _exists_ignoring_case(target: Path) -> bool:
    if target.exists():
        return True
    try:
        return any(
            sibling.name.lower() == target.name.lower() for sibling in target.parent.iterdir()
        )
    except OSError:
        return False


def open_package(path: Path) -> zipfile.ZipFile:
    """Open *path* for reading, raising :class:`PackageError` when unusable."""
    if not path.is_file():
        raise PackageError(f"Package archive '{path}' does not exist or is not a file.")
    try:
        return zipfile.ZipFile(path, "r")
    except (OSError, zipfile.BadZipFile) as exc:
        raise PackageError(f"Package archive '{path}' is not readable: {exc}") from exc


def ensure_readable(path: Path) -> None:
    """Validate that *path* is a readable zip archive without extracting it."""
    with open_package(path):
        pass


def find_package(directory: Path) -> Path:
    """Return the single ``*.zip`` file inside *directory*."""
    if not directory.is_dir():
        raise PackageError(f"Package directory '{directory}' does not exist.")
    candidates = sorted(
        path for path in directory.iterdir() if path.is_file() and path.suffix.lower() == ".zip"
    )
    if not candidates:
        raise PackageError(f"No ZIP file found in '{directory}'.")
    if len(candidates) > 1:
        raise PackageError(
            f"Expected exactly one ZIP file in '{directory}', but found {len(candidates)}."
        )
    return candidates[0]


def iter_payload_entries(
    archive: zipfile.ZipFile,
    root_marker: str = DEFAULT_ROOT_MARKER,
) -> Iterator[ArchiveEntry]:
    """Yield entries rooted under *root_marker* with the prefix removed."""
    prefix = f"{root_marker.strip('/')}/".lower()
    for member in archive.infolist():
        full_name = member.filename.replace("\\", "/")
        if not full_name.lower().startswith(prefix):
            continue
        relative = full_name[len(prefix) :]
        if not relative.strip("/").strip():
            continue
        is_directory = relative.endswith("/")
        yield ArchiveEntry(
            relative_path=relative.rstrip("/"),
            is_directory=is_directory,
            member=member,
        )


def _resolve_target(target_root: Path, relative: str) -> Path | None:
    root = target_root.resolve()
    candidate = (root / relative).resolve()
    if candidate != root and root not in candidate.parents:
        return None
    return candidate


def extract_package(
    archive_path: Path,
    target_root: Path,
    outcome: DeploymentOutcome,
    *,
    root_marker: str = DEFAULT_ROOT_MARKER,
    should_skip: ProtectedPredicate | None = None,
) -> ExtractionReport:
    """Extract the payload of *archive_path* into *target_root*.

    *should_skip* receives the resolved target path of every file entry and
    decides whether a protected file must be left alone. Opening the archive
    is structural and raises :class:`PackageError`; individual entry failures
    are logged on *outcome* and collected in the returned report.
    """
    skip = should_skip or skip_protected()
    report = ExtractionReport()
    outcome.add_log("Extracting new deployment...")
    with open_package(archive_path) as archive:
        for entry in iter_payload_entries(archive, root_marker):
            target = _resolve_target(target_root, entry.relative_path)
            if target is None:
                outcome.add_log(
                    f"Warning: Refusing entry outside the site folder: {entry.relative_path}"
                )
                report.failed.append(entry.relative_path)
                continue

            if entry.is_directory:
                try:
                    target.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    outcome.add_log(
                        f"Warning: Could not create directory {entry.relative_path}: {exc}"
                    )
                    report.failed.append(entry.relative_path)
                    continue
                outcome.add_log(f"Created directory: {entry.relative_path}")
                report.directories.append(entry.relative_path)
                continue

            if skip(target):
                outcome.add_log(f"Skipping protected file from package: {entry.relative_path}")
                report.skipped.append(entry.relative_path)
                continue

            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(entry.member) as source, target.open("wb") as handle:
                    shutil.copyfileobj(source, handle)
            except (OSError, zipfile.BadZipFile) as exc:
                outcome.add_log(f"Warning: Failed to extract {entry.relative_path}: {exc}")
                report.failed.append(entry.relative_path)
                continue
            outcome.add_log(f"Extracted: {entry.relative_path}")
            report.extracted.append(entry.relative_path)

    outcome.add_log(
        "Extraction complete "
        f"({len(report.extracted)} extracted, {len(report.skipped)} skipped, "
        f"{len(report.failed)} failed)."
    )
    return report


__all__ = [
    "DEFAULT_PROTECTED_FILES",
    "DEFAULT_ROOT_MARKER",
    "ArchiveEntry",
    "ExtractionReport",
    "PackageError",
    "ensure_readable",
    "extract_package",
    "find_package",
    "is_protected_file",
    "iter_payload_entries",
    "open_package",
    "skip_existing_protected",
    "skip_protected",
]
