"""File locks that serialise operations per site.

Two operations against the same site would race each other through
stop/purge/extract, so every mutating command holds the site's lock for its
whole duration. Operations on different sites only contend for the short
global lock that orders acquisition.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "sitedeploy"


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and the time spent waiting for it."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total wait across all handles."""
        return sum(handle.wait_ms for handle in self.handles)


def _lock_filename(name: str) -> str:
    safe = "".join(char if char.isalnum() or char in {"-", "_", "."} else "-" for char in name)
    return f"{safe.lower()}.lock"


class LockManager:
    """Hand out ``flock`` based locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Remember where lock files live and the default wait."""
        self._root = runtime_dir.expanduser()
        self._default_timeout = default_timeout

    @contextmanager
    def site_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for site *name* (case-insensitive)."""
        with self._acquire(self._root / _lock_filename(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_sites(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock, then each site lock in sorted order."""
        unique = sorted({name.strip().lower() for name in names if name.strip()})
        with ExitStack() as stack:
            handles = [
                stack.enter_context(
                    self._acquire(self._root / _lock_filename(GLOBAL_LOCK_NAME), timeout)
                )
            ]
            for name in unique:
                handles.append(stack.enter_context(self.site_lock(name, timeout=timeout)))
            yield LockBundle(handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self._default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        with path.open("a+", encoding="utf-8") as handle:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(0.05)
            wait_ms = int((time.monotonic() - started) * 1000)
            try:
                handle.seek(0)
                handle.truncate()
                json.dump(
                    {
                        "pid": os.getpid(),
                        "path": str(path),
                        "acquired_at": datetime.now(UTC).isoformat(timespec="seconds"),
                    },
                    handle,
                )
                handle.flush()
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
