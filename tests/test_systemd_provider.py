"""Tests for the systemd provider."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from typing import Any

import pytest

from sitedeploy.providers.systemd import SystemdError, SystemdProvider


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def test_unit_name_is_normalised() -> None:
    """Unit names are lower-cased and stripped of separators."""
    provider = SystemdProvider()

    assert provider.unit_name("site", "My Site") == "sitedeploy-site-my-site.service"
    assert provider.unit_name("pool", "a/b") == "sitedeploy-pool-a-b.service"


def test_start_and_stop_invoke_systemctl(monkeypatch: pytest.MonkeyPatch) -> None:
    """Lifecycle calls run systemctl against the derived unit."""
    calls: list[list[str]] = []

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        calls.append(list(args))
        return DummyResult()

    monkeypatch.setattr(subprocess, "run", fake_run)
    provider = SystemdProvider(systemctl_bin="/usr/bin/systemctl")

    provider.start("pool", "alpha")
    provider.stop("site", "alpha")

    assert calls == [
        ["/usr/bin/systemctl", "start", "sitedeploy-pool-alpha.service"],
        ["/usr/bin/systemctl", "stop", "sitedeploy-site-alpha.service"],
    ]


def test_failed_command_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits surface stderr in a SystemdError."""
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda args, **kwargs: DummyResult(returncode=5, stderr="Unit not found.\n"),
    )
    provider = SystemdProvider()

    with pytest.raises(SystemdError, match=r"systemctl stop failed \(exit 5\): Unit not found."):
        provider.stop("site", "alpha")


def test_missing_binary_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing systemctl binary is reported as SystemdError."""

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(SystemdError, match="not found"):
        SystemdProvider(systemctl_bin="no-such-systemctl").start("site", "alpha")


def test_dry_run_skips_execution(monkeypatch: pytest.MonkeyPatch) -> None:
    """Dry runs never spawn processes."""

    def fail_run(*args: object, **kwargs: object) -> DummyResult:
        raise AssertionError("subprocess.run should not be called")

    monkeypatch.setattr(subprocess, "run", fail_run)

    SystemdProvider(dry_run=True).start("site", "alpha")
