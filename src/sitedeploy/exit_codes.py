"""Process exit codes reported by the sitedeploy CLI."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit status for each class of outcome failure."""

    OK = 0
    # Bad input: unknown site, unreadable package, invalid port or thumbprint.
    VALIDATION = 2
    # Host problems: filesystem errors, lock timeouts, unusable directories.
    ENVIRONMENT = 3
    # The site registry, service controller or trust store refused a change.
    PROVIDER = 4
