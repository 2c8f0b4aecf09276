"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import zipfile
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from sitedeploy.providers import StateSiteRegistry
from sitedeploy.state import StateRegistry

PackageFactory = Callable[..., Path]


@pytest.fixture
def make_package(tmp_path: Path) -> PackageFactory:
    """Return a factory writing ZIP packages.

    Entries map archive member names to file content; a ``None`` value writes
    a directory entry instead.
    """

    def _make(
        entries: Mapping[str, bytes | str | None],
        *,
        name: str = "release.zip",
        directory: Path | None = None,
    ) -> Path:
        target_dir = directory or (tmp_path / "packages")
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        with zipfile.ZipFile(path, "w") as archive:
            for member, content in entries.items():
                if content is None:
                    archive.writestr(zipfile.ZipInfo(member.rstrip("/") + "/"), b"")
                else:
                    archive.writestr(member, content)
        return path

    return _make


@pytest.fixture
def state(tmp_path: Path) -> StateRegistry:
    """Return a state registry rooted in the temporary directory."""
    registry = StateRegistry(tmp_path / "state" / "registry")
    registry.ensure_root()
    return registry


@pytest.fixture
def open_registry(state: StateRegistry) -> Callable[[], StateSiteRegistry]:
    """Return a factory opening fresh site registry handles."""
    return lambda: StateSiteRegistry(state)


@pytest.fixture
def register_site(state: StateRegistry) -> Callable[..., None]:
    """Return a helper registering a site (and its pool), optionally started."""

    def _register(
        name: str,
        root: Path,
        *,
        port: int = 8080,
        running: bool = True,
        pool: bool = True,
    ) -> None:
        with StateSiteRegistry(state) as registry:
            pool_handle = registry.add_pool(name, "v4.0") if pool else None
            site = registry.add_site(name, root, port, pool_name=name)
            if running:
                if pool_handle is not None:
                    pool_handle.start()
                site.start()
            registry.commit()

    return _register
