"""Systemd provider that backs site and pool lifecycle transitions."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Start and stop the service units that host sites and execution pools.

    Each site and each pool maps to one unit named
    ``sitedeploy-<kind>-<name>.service``. Rendering those units is left to the
    host's own provisioning; this provider only drives their lifecycle.
    """

    systemctl_bin: str = "systemctl"
    dry_run: bool = False

    def unit_name(self, kind: str, name: str) -> str:
        """Return the systemd unit name for *kind* (``site``/``pool``) *name*."""
        safe = name.replace("/", "-").replace(" ", "-").lower()
        return f"sitedeploy-{kind}-{safe}.service"

    def start(self, kind: str, name: str) -> None:
        """Start the unit backing *name*."""
        self._systemctl("start", self.unit_name(kind, name))

    def stop(self, kind: str, name: str) -> None:
        """Stop the unit backing *name*."""
        self._systemctl("stop", self.unit_name(kind, name))

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str,
    ) -> subprocess.CompletedProcess[str]:
        args = [self.systemctl_bin, command, unit]
        return self._run_command(args, error_prefix=f"{self.systemctl_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        if self.dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
