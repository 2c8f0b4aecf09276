"""Site and execution-pool control plane.

Orchestrators never talk to the host directly; they receive a
:class:`SiteRegistry` capability that can enumerate, resolve, start, stop and
create sites and pools. Changes to the registry are buffered until
:meth:`SiteRegistry.commit` is called.

:class:`StateSiteRegistry` is the bundled implementation. It keeps the site
catalogue in ``sites.yml`` under the state directory and, when given a
:class:`ServiceController`, forwards lifecycle transitions to it (for example
the systemd provider) so start/stop take effect on the host.
"""
from __future__ import annotations

from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Any, Protocol

from ..state import StateRegistry


class SiteRegistryError(RuntimeError):
    """Raised when the site registry cannot satisfy a request."""


class LifecycleState(Enum):
    """Lifecycle states reported for sites and pools."""

    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"

    @property
    def is_running(self) -> bool:
        """Return True for states that count as running."""
        return self in {LifecycleState.STARTING, LifecycleState.STARTED}


@dataclass(frozen=True)
class Binding:
    """Network binding attached to a site."""

    protocol: str
    port: int
    ip: str = "*"
    host: str = ""
    certificate_store: str | None = None
    certificate_hash: bytes | None = None

    @property
    def binding_information(self) -> str:
        """Return the ``ip:port:host`` triple used by the host."""
        return f"{self.ip}:{self.port}:{self.host}"

    def to_dict(self) -> dict[str, object]:
        """Return a YAML-friendly representation."""
        payload: dict[str, object] = {
            "protocol": self.protocol,
            "ip": self.ip,
            "port": self.port,
            "host": self.host,
        }
        if self.certificate_store is not None:
            payload["certificate_store"] = self.certificate_store
        if self.certificate_hash is not None:
            payload["certificate_hash"] = self.certificate_hash.hex().upper()
        return payload

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> Binding:
        """Rebuild a binding from :meth:`to_dict` output."""
        cert_hash = raw.get("certificate_hash")
        return cls(
            protocol=str(raw.get("protocol", "http")),
            port=int(raw.get("port", 0)),
            ip=str(raw.get("ip", "*")),
            host=str(raw.get("host", "") or ""),
            certificate_store=(
                str(raw["certificate_store"]) if raw.get("certificate_store") else None
            ),
            certificate_hash=bytes.fromhex(str(cert_hash)) if cert_hash else None,
        )


class ServiceController(Protocol):
    """Host hook invoked when a site or pool changes lifecycle state."""

    def start(self, kind: str, name: str) -> None:
        """Start the service backing *name*."""

    def stop(self, kind: str, name: str) -> None:
        """Stop the service backing *name*."""


class PoolHandle(Protocol):
    """Execution pool as exposed by a registry."""

    name: str
    runtime: str

    @property
    def state(self) -> LifecycleState:
        """Return the current lifecycle state."""

    def start(self) -> None:
        """Start the pool."""

    def stop(self) -> None:
        """Stop the pool."""


class SiteHandle(Protocol):
    """Site as exposed by a registry."""

    name: str
    physical_root: Path
    pool_name: str
    bindings: list[Binding]

    @property
    def state(self) -> LifecycleState:
        """Return the current lifecycle state."""

    def start(self) -> None:
        """Start the site."""

    def stop(self) -> None:
        """Stop the site."""

    def add_binding(self, binding: Binding) -> None:
        """Attach *binding* to the site."""

    def remove_binding(self, binding: Binding) -> None:
        """Detach *binding* from the site."""


class SiteRegistry(Protocol):
    """Capability interface for the site/pool control plane."""

    def site_names(self) -> list[str]:
        """Return registered site names."""

    def get_site(self, name: str) -> SiteHandle | None:
        """Return the site named *name* (case-insensitive) or None."""

    def get_pool(self, name: str) -> PoolHandle | None:
        """Return the pool named *name* (case-insensitive) or None."""

    def add_pool(self, name: str, runtime: str) -> PoolHandle:
        """Create a new execution pool."""

    def add_site(
        self,
        name: str,
        physical_root: Path,
        port: int,
        *,
        pool_name: str | None = None,
    ) -> SiteHandle:
        """Create a new site with a default plaintext binding on *port*."""

    def commit(self) -> None:
        """Persist pending changes."""

    def close(self) -> None:
        """Release the registry handle."""

    def __enter__(self) -> SiteRegistry:
        """Return the open registry."""

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the registry."""


# ----------------------------------------------------------------------
# YAML-backed implementation
# ----------------------------------------------------------------------
@dataclass(eq=False)
class StatePool:
    """Pool record held by :class:`StateSiteRegistry`."""

    registry: StateSiteRegistry = field(repr=False)
    name: str
    runtime: str
    _state: LifecycleState = LifecycleState.STOPPED

    @property
    def state(self) -> LifecycleState:
        """Return the current lifecycle state."""
        return self._state

    def start(self) -> None:
        """Start the pool, delegating to the service controller when present."""
        self.registry.transition("pool", self.name, start=True)
        self._state = LifecycleState.STARTED

    def stop(self) -> None:
        """Stop the pool, delegating to the service controller when present."""
        self.registry.transition("pool", self.name, start=False)
        self._state = LifecycleState.STOPPED

    def to_dict(self) -> dict[str, object]:
        """Return a YAML-friendly representation."""
        return {"name": self.name, "runtime": self.runtime, "state": self._state.value}


@dataclass(eq=False)
class StateSite:
    """Site record held by :class:`StateSiteRegistry`."""

    registry: StateSiteRegistry = field(repr=False)
    name: str
    physical_root: Path
    pool_name: str
    bindings: list[Binding] = field(default_factory=list)
    _state: LifecycleState = LifecycleState.STOPPED

    @property
    def state(self) -> LifecycleState:
        """Return the current lifecycle state."""
        return self._state

    def start(self) -> None:
        """Start the site, delegating to the service controller when present."""
        self.registry.transition("site", self.name, start=True)
        self._state = LifecycleState.STARTED

    def stop(self) -> None:
        """Stop the site, delegating to the service controller when present."""
        self.registry.transition("site", self.name, start=False)
        self._state = LifecycleState.STOPPED

    def add_binding(self, binding: Binding) -> None:
        """Attach *binding* to the site."""
        self.registry.ensure_open()
        self.bindings.append(binding)

    def remove_binding(self, binding: Binding) -> None:
        """Detach *binding* from the site."""
        self.registry.ensure_open()
        try:
            self.bindings.remove(binding)
        except ValueError as exc:
            raise SiteRegistryError(
                f"Binding {binding.protocol} {binding.binding_information} "
                f"is not attached to site '{self.name}'."
            ) from exc

    def to_dict(self) -> dict[str, object]:
        """Return a YAML-friendly representation."""
        return {
            "name": self.name,
            "physical_root": str(self.physical_root),
            "pool": self.pool_name,
            "state": self._state.value,
            "bindings": [binding.to_dict() for binding in self.bindings],
        }


class StateSiteRegistry:
    """Site registry persisted in ``sites.yml``.

    The catalogue is loaded when the registry is opened. Every mutation works
    on an in-memory copy that only becomes visible to other handles after
    :meth:`commit`.
    """

    FILENAME = "sites.yml"

    def __init__(
        self,
        state: StateRegistry,
        *,
        controller: ServiceController | None = None,
    ) -> None:
        """Load the current catalogue from *state*."""
        self._state = state
        self._controller = controller
        self._closed = False
        self._sites: list[StateSite] = []
        self._pools: list[StatePool] = []
        self._load()

    # Context management ----------------------------------------------
    def __enter__(self) -> StateSiteRegistry:
        """Return the open registry."""
        self.ensure_open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the registry, discarding uncommitted changes."""
        self.close()

    def close(self) -> None:
        """Release the handle. Uncommitted changes are discarded."""
        self._closed = True

    def ensure_open(self) -> None:
        """Raise when the handle has already been released."""
        if self._closed:
            raise SiteRegistryError("Site registry handle has been closed.")

    # Queries ---------------------------------------------------------
    def site_names(self) -> list[str]:
        """Return registered site names in catalogue order."""
        self.ensure_open()
        return [site.name for site in self._sites]

    def get_site(self, name: str) -> StateSite | None:
        """Return the site named *name* (case-insensitive) or None."""
        self.ensure_open()
        wanted = name.strip().lower()
        for site in self._sites:
            if site.name.lower() == wanted:
                return site
        return None

    def get_pool(self, name: str) -> StatePool | None:
        """Return the pool named *name* (case-insensitive) or None."""
        self.ensure_open()
        wanted = name.strip().lower()
        for pool in self._pools:
            if pool.name.lower() == wanted:
                return pool
        return None

    # Mutations -------------------------------------------------------
    def add_pool(self, name: str, runtime: str) -> StatePool:
        """Create a stopped execution pool named *name*."""
        normalized = _normalize_name(name)
        if self.get_pool(normalized) is not None:
            raise SiteRegistryError(f"Execution pool '{normalized}' already exists.")
        pool = StatePool(self, normalized, runtime)
        self._pools.append(pool)
        return pool

    def add_site(
        self,
        name: str,
        physical_root: Path,
        port: int,
        *,
        pool_name: str | None = None,
    ) -> StateSite:
        """Create a stopped site with a default ``http`` binding on *port*."""
        normalized = _normalize_name(name)
        if self.get_site(normalized) is not None:
            raise SiteRegistryError(f"Site '{normalized}' already exists.")
        if not 1 <= port <= 65535:
            raise SiteRegistryError(f"Port {port} is outside the range 1-65535.")
        site = StateSite(
            self,
            normalized,
            Path(physical_root),
            pool_name or normalized,
            bindings=[Binding(protocol="http", port=port)],
        )
        self._sites.append(site)
        return site

    def commit(self) -> None:
        """Persist the in-memory catalogue to ``sites.yml``."""
        self.ensure_open()
        self._state.write_sites(
            [site.to_dict() for site in self._sites],
            [pool.to_dict() for pool in self._pools],
        )

    def transition(self, kind: str, name: str, *, start: bool) -> None:
        """Forward a lifecycle change for *kind*/*name* to the controller."""
        self.ensure_open()
        if self._controller is None:
            return
        if start:
            self._controller.start(kind, name)
        else:
            self._controller.stop(kind, name)

    # ------------------------------------------------------------------
    def _load(self) -> None:
        raw = deepcopy(self._state.read_sites())
        for entry in _as_list(raw.get("pools")):
            if not isinstance(entry, Mapping) or not entry.get("name"):
                continue
            self._pools.append(
                StatePool(
                    self,
                    str(entry["name"]),
                    str(entry.get("runtime", "")),
                    _parse_state(entry.get("state")),
                )
            )
        for entry in _as_list(raw.get("sites")):
            if not isinstance(entry, Mapping) or not entry.get("name"):
                continue
            name = str(entry["name"])
            physical_root = str(entry.get("physical_root") or "").strip()
            if not physical_root:
                raise SiteRegistryError(
                    f"Site '{name}' in {self._state.path_for('sites.yml')} has no physical_root."
                )
            bindings = [
                Binding.from_mapping(item)
                for item in _as_list(entry.get("bindings"))
                if isinstance(item, Mapping)
            ]
            self._sites.append(
                StateSite(
                    self,
                    name,
                    Path(physical_root),
                    str(entry.get("pool") or name),
                    bindings,
                    _parse_state(entry.get("state")),
                )
            )


def _as_list(value: object) -> list[object]:
    return list(value) if isinstance(value, list) else []


def _parse_state(value: object) -> LifecycleState:
    try:
        return LifecycleState(str(value).strip().lower())
    except ValueError:
        return LifecycleState.STOPPED


def _normalize_name(name: str) -> str:
    normalized = name.strip()
    if not normalized:
        raise SiteRegistryError("Name must be a non-empty string.")
    return normalized


__all__ = [
    "Binding",
    "LifecycleState",
    "PoolHandle",
    "ServiceController",
    "SiteHandle",
    "SiteRegistry",
    "SiteRegistryError",
    "StatePool",
    "StateSite",
    "StateSiteRegistry",
]
