"""Provider interfaces for sitedeploy."""
from __future__ import annotations

from .registry import (
    Binding,
    LifecycleState,
    PoolHandle,
    ServiceController,
    SiteHandle,
    SiteRegistry,
    SiteRegistryError,
    StateSiteRegistry,
)
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "Binding",
    "LifecycleState",
    "PoolHandle",
    "ServiceController",
    "SiteHandle",
    "SiteRegistry",
    "SiteRegistryError",
    "StateSiteRegistry",
    "SystemdError",
    "SystemdProvider",
]
