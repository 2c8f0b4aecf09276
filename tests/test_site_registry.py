"""Tests for the YAML-backed site registry."""
from __future__ import annotations

from pathlib import Path

import pytest

from sitedeploy.providers import Binding, LifecycleState, SiteRegistryError, StateSiteRegistry
from sitedeploy.state import StateRegistry


class RecordingController:
    """Service controller that records lifecycle calls."""

    def __init__(self, fail_on: str | None = None) -> None:
        """Optionally fail when the given action is requested."""
        self.calls: list[tuple[str, str, str]] = []
        self.fail_on = fail_on

    def start(self, kind: str, name: str) -> None:
        """Record a start request."""
        self._record("start", kind, name)

    def stop(self, kind: str, name: str) -> None:
        """Record a stop request."""
        self._record("stop", kind, name)

    def _record(self, action: str, kind: str, name: str) -> None:
        if action == self.fail_on:
            raise RuntimeError(f"{action} refused")
        self.calls.append((action, kind, name))


def test_changes_are_visible_only_after_commit(state: StateRegistry, tmp_path: Path) -> None:
    """Uncommitted sites are discarded when the handle closes."""
    with StateSiteRegistry(state) as registry:
        registry.add_pool("alpha", "v4.0")
        registry.add_site("alpha", tmp_path / "alpha", 8080)

    with StateSiteRegistry(state) as registry:
        assert registry.site_names() == []
        registry.add_pool("alpha", "v4.0")
        registry.add_site("alpha", tmp_path / "alpha", 8080)
        registry.commit()

    with StateSiteRegistry(state) as registry:
        site = registry.get_site("ALPHA")
        assert site is not None
        assert site.physical_root == tmp_path / "alpha"
        assert site.pool_name == "alpha"
        assert site.state is LifecycleState.STOPPED
        assert site.bindings == [Binding(protocol="http", port=8080)]


def test_add_site_validates_port_and_duplicates(state: StateRegistry, tmp_path: Path) -> None:
    """Ports outside 1-65535 and duplicate names are rejected."""
    with StateSiteRegistry(state) as registry:
        with pytest.raises(SiteRegistryError, match="outside the range"):
            registry.add_site("alpha", tmp_path, 0)
        registry.add_site("alpha", tmp_path, 443)
        with pytest.raises(SiteRegistryError, match="already exists"):
            registry.add_site("Alpha", tmp_path, 444)
        registry.add_pool("alpha", "v4.0")
        with pytest.raises(SiteRegistryError, match="already exists"):
            registry.add_pool("ALPHA", "v4.0")


def test_https_binding_roundtrips_certificate_hash(state: StateRegistry, tmp_path: Path) -> None:
    """HTTPS bindings persist their certificate store and raw hash."""
    with StateSiteRegistry(state) as registry:
        site = registry.add_site("alpha", tmp_path, 443)
        default = site.bindings[0]
        site.remove_binding(default)
        site.add_binding(
            Binding("https", 443, certificate_store="My", certificate_hash=bytes.fromhex("ab01"))
        )
        registry.commit()

    raw = state.read_sites()
    assert raw["sites"][0]["bindings"][0]["certificate_hash"] == "AB01"

    with StateSiteRegistry(state) as registry:
        site = registry.get_site("alpha")
        assert site is not None
        binding = site.bindings[0]
        assert binding.certificate_hash == b"\xab\x01"
        assert binding.binding_information == "*:443:"
        with pytest.raises(SiteRegistryError, match="not attached"):
            site.remove_binding(Binding("http", 80))


def test_lifecycle_transitions_reach_controller(state: StateRegistry, tmp_path: Path) -> None:
    """Start and stop are forwarded to the service controller."""
    controller = RecordingController()
    with StateSiteRegistry(state, controller=controller) as registry:
        pool = registry.add_pool("alpha", "v4.0")
        site = registry.add_site("alpha", tmp_path, 8080)
        pool.start()
        site.start()
        assert site.state.is_running
        site.stop()
        assert site.state is LifecycleState.STOPPED

    assert controller.calls == [
        ("start", "pool", "alpha"),
        ("start", "site", "alpha"),
        ("stop", "site", "alpha"),
    ]


def test_failed_transition_keeps_previous_state(state: StateRegistry, tmp_path: Path) -> None:
    """A controller failure propagates and leaves the state untouched."""
    controller = RecordingController(fail_on="start")
    with StateSiteRegistry(state, controller=controller) as registry:
        site = registry.add_site("alpha", tmp_path, 8080)
        with pytest.raises(RuntimeError, match="start refused"):
            site.start()
        assert site.state is LifecycleState.STOPPED


def test_closed_handle_rejects_use(state: StateRegistry) -> None:
    """A released handle cannot be used again."""
    registry = StateSiteRegistry(state)
    registry.close()

    with pytest.raises(SiteRegistryError, match="closed"):
        registry.site_names()


@pytest.mark.parametrize("record", [{"name": "alpha"}, {"name": "alpha", "physical_root": "  "}])
def test_site_without_physical_root_is_rejected(
    state: StateRegistry, record: dict[str, object]
) -> None:
    """A site record must name the directory it serves."""
    state.write_sites([record], [])

    with pytest.raises(SiteRegistryError, match="physical_root"):
        StateSiteRegistry(state)
