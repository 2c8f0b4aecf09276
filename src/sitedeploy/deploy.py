"""Redeploy a package onto an existing site.

The pipeline is strictly sequential: resolve, stop, settle, back up, purge,
extract, restart, commit. Only structural problems abort the run (unknown
site, unreadable package, a backup that cannot be written). Stopping and the
per-file work in purge and extract are best-effort: each failure is logged
with the item that caused it and the run carries on.
"""
from __future__ import annotations

import shutil
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from .archive import compute_checksum, create_archive, directory_has_entries, write_checksum_file
from .backups import BackupEntryBuilder, BackupRegistryError, BackupsRegistry
from .outcome import DeploymentOutcome
from .package import (
    DEFAULT_PROTECTED_FILES,
    DEFAULT_ROOT_MARKER,
    PackageError,
    ensure_readable,
    extract_package,
    is_protected_file,
    skip_protected,
)
from .providers.registry import PoolHandle, SiteHandle, SiteRegistry

DEFAULT_SETTLE_SECONDS = 3.0

RegistryFactory = Callable[[], SiteRegistry]
BackupsFactory = Callable[[Path], BackupsRegistry]


def stop_component(kind: str, handle: SiteHandle | PoolHandle, outcome: DeploymentOutcome) -> None:
    """Stop *handle* when running; failures are logged, never raised."""
    label = f"{kind} '{handle.name}'"
    title = f"{kind.capitalize()} '{handle.name}'"
    try:
        if handle.state.is_running:
            handle.stop()
            outcome.add_log(f"{title} stopped.")
        else:
            outcome.add_log(f"{title} already stopped.")
    except Exception as exc:  # noqa: BLE001 - a failed stop never aborts a deploy
        outcome.add_log(f"Warning: Could not definitively stop {label}: {exc}")


def start_component(kind: str, handle: SiteHandle | PoolHandle, outcome: DeploymentOutcome) -> None:
    """Start *handle* when it is not already running."""
    label = f"{kind} '{handle.name}'"
    title = f"{kind.capitalize()} '{handle.name}'"
    if handle.state.is_running:
        outcome.add_log(f"{title} was not stopped or already started.")
        return
    outcome.add_log(f"Starting {label}...")
    handle.start()
    outcome.add_log(f"{title} started.")


def purge_site_root(
    root: Path,
    outcome: DeploymentOutcome,
    protected_files: Iterable[str] = DEFAULT_PROTECTED_FILES,
) -> list[str]:
    """Empty *root* except for protected files and return what could not be removed.

    Top-level files are deleted unless their name is protected. Top-level
    directories are always removed recursively. A missing root is created.
    """
    if not root.exists():
        outcome.add_log(f"Physical path '{root}' does not exist. Creating it.")
        root.mkdir(parents=True, exist_ok=True)
        return []

    protected = tuple(protected_files)
    leftovers: list[str] = []
    outcome.add_log("Cleaning up site folder...")
    entries = sorted(root.iterdir())
    for path in entries:
        if path.is_dir() and not path.is_symlink():
            continue
        if is_protected_file(path.name, protected):
            outcome.add_log(f"Protected file skipped: {path.name}")
            continue
        try:
            path.unlink()
        except OSError as exc:
            outcome.add_log(f"Warning: Could not delete file {path.name}: {exc}")
            leftovers.append(path.name)
            continue
        outcome.add_log(f"Deleted file: {path.name}")

    for path in entries:
        if not path.is_dir() or path.is_symlink():
            continue
        try:
            shutil.rmtree(path)
        except OSError as exc:
            outcome.add_log(f"Warning: Could not delete directory {path.name}: {exc}")
            leftovers.append(f"{path.name}/")
            continue
        outcome.add_log(f"Deleted directory: {path.name}")

    outcome.add_log("Site folder cleanup complete.")
    return leftovers


class DeploymentOrchestrator:
    """Stop, back up, replace and restart an existing site."""

    def __init__(
        self,
        open_registry: RegistryFactory,
        *,
        backups: BackupsRegistry | BackupsFactory = BackupsRegistry.beside_package,
        root_marker: str = DEFAULT_ROOT_MARKER,
        protected_files: Iterable[str] = DEFAULT_PROTECTED_FILES,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        cancel: threading.Event | None = None,
    ) -> None:
        """Configure collaborators and deployment conventions."""
        self._open_registry = open_registry
        self._backups = backups
        self._root_marker = root_marker
        self._protected = tuple(protected_files)
        self._settle_seconds = settle_seconds
        self._sleep = sleep
        self._cancel = cancel

    def deploy(self, site_name: str, package_path: Path) -> DeploymentOutcome:
        """Deploy *package_path* onto the registered site *site_name*."""
        outcome = DeploymentOutcome(summary=f"Starting deployment to site: {site_name}")
        outcome.add_log(
            f"Deployment initiated for site '{site_name}' using package '{package_path.name}'."
        )
        outcome.details["package"] = package_path

        try:
            with self._open_registry() as registry:
                self._run(registry, site_name.strip(), package_path, outcome)
        except Exception as exc:  # noqa: BLE001 - terminal safety net
            outcome.fail(f"Error deploying to site {site_name}: {exc}", exc)
        return outcome

    # ------------------------------------------------------------------
    def _run(
        self,
        registry: SiteRegistry,
        site_name: str,
        package_path: Path,
        outcome: DeploymentOutcome,
    ) -> None:
        site = registry.get_site(site_name) if site_name else None
        if site is None:
            outcome.fail(f"Site '{site_name}' not found.")
            return

        try:
            ensure_readable(package_path)
        except PackageError as exc:
            outcome.fail(str(exc), exc)
            return

        root = site.physical_root
        outcome.add_log(f"Site physical path: {root}")
        pool = registry.get_pool(site.pool_name)

        if self._cancel is not None and self._cancel.is_set():
            outcome.fail(f"Deployment to site '{site.name}' cancelled before any change.")
            return

        outcome.add_log("Stopping the site...")
        stop_component("site", site, outcome)
        if pool is not None:
            outcome.add_log(f"Stopping execution pool: {pool.name}...")
            stop_component("execution pool", pool, outcome)
        else:
            outcome.add_log(f"Warning: Execution pool '{site.pool_name}' not found.")
        registry.commit()
        outcome.add_log("Committed site and execution pool state changes.")

        if self._settle_seconds > 0:
            outcome.add_log(
                f"Waiting for {self._settle_seconds:g} seconds for services to shut down..."
            )
            self._sleep(self._settle_seconds)

        backup = self._backup(site.name, root, package_path, outcome)
        if backup is not None:
            outcome.details["backup"] = backup

        leftovers = purge_site_root(root, outcome, self._protected)
        report = extract_package(
            package_path,
            root,
            outcome,
            root_marker=self._root_marker,
            should_skip=skip_protected(self._protected),
        )

        if pool is not None:
            start_component("execution pool", pool, outcome)
        start_component("site", site, outcome)
        registry.commit()
        outcome.add_log("Committed final site and execution pool state changes.")

        outcome.details["extracted"] = len(report.extracted)
        outcome.details["skipped"] = len(report.skipped)
        outcome.details["failed"] = len(report.failed) + len(leftovers)
        outcome.succeed(f"Deployment to site '{site.name}' completed successfully.")
        outcome.add_log("Done.")

    def _backup(
        self,
        site_name: str,
        root: Path,
        package_path: Path,
        outcome: DeploymentOutcome,
    ) -> Path | None:
        outcome.add_log("Creating backup...")
        if not directory_has_entries(root):
            outcome.add_log(f"Skipping backup for '{root}' as it's empty or doesn't exist.")
            return None

        registry = (
            self._backups
            if isinstance(self._backups, BackupsRegistry)
            else self._backups(package_path)
        )
        registry.ensure_root()
        archive_path = registry.archive_path(site_name)
        entries = create_archive(root, archive_path)
        checksum = compute_checksum(archive_path)
        write_checksum_file(archive_path, checksum)
        outcome.add_log(f"Backup created: {archive_path}")

        entry = BackupEntryBuilder(
            site=site_name,
            archive_path=archive_path,
            source=root,
            checksum=checksum,
            size_bytes=archive_path.stat().st_size,
            entries=entries,
            package=package_path,
        ).build(backup_id=registry.generate_identifier(site_name))
        try:
            registry.append(entry)
        except BackupRegistryError as exc:
            outcome.add_log(f"Warning: Backup index not updated: {exc}")
        return archive_path


__all__ = [
    "DEFAULT_SETTLE_SECONDS",
    "DeploymentOrchestrator",
    "purge_site_root",
    "start_component",
    "stop_component",
]
