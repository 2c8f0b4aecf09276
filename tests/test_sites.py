"""Tests for site provisioning."""
from __future__ import annotations

from pathlib import Path

import pytest

from sitedeploy.certificates import CertificateCreationError, CertificateProvisioner
from sitedeploy.certstore import DirectoryCertificateStore
from sitedeploy.outcome import DeploymentOutcome
from sitedeploy.providers import Binding, LifecycleState
from sitedeploy.sites import SiteProvisioner, copy_sample_files, validate_site_name
from sitedeploy.state import StateRegistry


@pytest.fixture
def provisioner(tmp_path: Path, open_registry) -> SiteProvisioner:
    """Return a provisioner writing under the temporary directory."""
    certificates = CertificateProvisioner(DirectoryCertificateStore(tmp_path / "store"))
    return SiteProvisioner(
        open_registry,
        certificates,
        base_path=tmp_path / "sites",
        certs_path=tmp_path / "certs",
    )


def test_create_site_end_to_end(tmp_path: Path, provisioner, make_package, open_registry) -> None:
    """A new site is seeded, bound over HTTPS, extracted and started."""
    drop = tmp_path / "drop"
    package = make_package(
        {
            "Publish/index.html": b"home",
            "Publish/web.config": b"<packaged/>",
            "Publish/appsettings.json": b'{"packaged": true}',
        },
        directory=drop,
    )
    (drop / "Web.config.sample").write_text("<sample/>")
    (drop / "appsettings.json.sample").write_text('{"sample": true}')

    outcome = provisioner.create_site("alpha", package, 8443, "pw")

    assert outcome.succeeded, outcome.log
    root = tmp_path / "sites" / "alpha"
    assert (root / "index.html").read_bytes() == b"home"
    assert (root / "Web.config").read_text() == "<sample/>"
    assert not (root / "web.config").exists()
    assert (root / "appsettings.json").read_text() == '{"sample": true}'
    assert (tmp_path / "certs" / "alpha.pfx").exists()

    thumbprint = str(outcome.details["thumbprint"])
    with open_registry() as registry:
        site = registry.get_site("alpha")
        pool = registry.get_pool("alpha")
        assert site is not None and pool is not None
        assert site.bindings == [
            Binding(
                protocol="https",
                port=8443,
                certificate_store="My",
                certificate_hash=bytes.fromhex(thumbprint),
            )
        ]
        assert pool.runtime == "v4.0"
        assert site.state is LifecycleState.STARTED
        assert pool.state is LifecycleState.STARTED


def test_create_site_without_samples_uses_packaged_config(
    tmp_path: Path, provisioner, make_package
) -> None:
    """Protected files from the package are written when nothing was seeded."""
    package = make_package({"Publish/web.config": b"<packaged/>"})

    outcome = provisioner.create_site("alpha", package, 443, "pw", pool_runtime="No Managed Code")

    assert outcome.succeeded, outcome.log
    assert (tmp_path / "sites" / "alpha" / "web.config").read_bytes() == b"<packaged/>"


@pytest.mark.parametrize("port", [0, 65536])
def test_invalid_port_fails_before_any_mutation(
    tmp_path: Path, provisioner, make_package, state: StateRegistry, port: int
) -> None:
    """Out-of-range ports are rejected before touching disk or registry."""
    package = make_package({"Publish/index.html": b"x"})

    outcome = provisioner.create_site("alpha", package, port, "pw")

    assert outcome.succeeded is False
    assert "outside the range" in outcome.summary
    assert not (tmp_path / "sites").exists()
    assert not (tmp_path / "store").exists()
    assert not state.path_for("sites.yml").exists()


@pytest.mark.parametrize("name", ["", "   ", "a/b", "..", "a\\b"])
def test_invalid_names_are_rejected(name: str) -> None:
    """Names must be a single non-empty path segment."""
    with pytest.raises(ValueError):
        validate_site_name(name)


def test_creating_twice_fails_without_touching_first_site(
    tmp_path: Path, provisioner, make_package, state: StateRegistry
) -> None:
    """The second attempt stops at the existing folder."""
    package = make_package({"Publish/index.html": b"v1"})
    assert provisioner.create_site("alpha", package, 443, "pw").succeeded
    before = state.path_for("sites.yml").read_text()

    outcome = provisioner.create_site("alpha", package, 443, "pw")

    assert outcome.succeeded is False
    assert "already exists" in outcome.summary
    assert state.path_for("sites.yml").read_text() == before
    assert (tmp_path / "sites" / "alpha" / "index.html").read_bytes() == b"v1"


def test_registered_name_removes_new_folder(
    tmp_path: Path, provisioner, make_package, register_site
) -> None:
    """A name already registered elsewhere aborts and discards the new folder."""
    register_site("alpha", tmp_path / "elsewhere")
    package = make_package({"Publish/index.html": b"x"})

    outcome = provisioner.create_site("alpha", package, 443, "pw")

    assert outcome.succeeded is False
    assert outcome.summary == "Site 'alpha' is already registered."
    assert not (tmp_path / "sites" / "alpha").exists()


def test_certificate_failure_aborts_and_cleans_up(
    tmp_path: Path, provisioner, make_package, state: StateRegistry
) -> None:
    """A certificate failure is fatal and leaves no orphaned folder."""
    drop = tmp_path / "drop"
    package = make_package({"Publish/index.html": b"x"}, directory=drop)
    (drop / "web.config.sample").write_text("<sample/>")

    outcome = provisioner.create_site("alpha", package, 443, "")

    assert outcome.succeeded is False
    assert isinstance(outcome.failure, CertificateCreationError)
    assert outcome.summary.startswith("Certificate creation failed for site 'alpha'")
    assert not (tmp_path / "sites" / "alpha").exists()
    assert not state.path_for("sites.yml").exists()


def test_failure_after_commit_is_not_rolled_back(
    tmp_path: Path, provisioner, make_package, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Once the site is committed a later failure leaves it for the operator."""
    package = make_package({"Publish/index.html": b"x"})

    def explode(*args: object, **kwargs: object) -> None:
        raise RuntimeError("extract blew up")

    monkeypatch.setattr("sitedeploy.sites.extract_package", explode)

    outcome = provisioner.create_site("alpha", package, 443, "pw")

    assert outcome.succeeded is False
    assert outcome.summary == "Error creating site alpha: extract blew up"
    assert (tmp_path / "sites" / "alpha").exists()
    assert any("left partially created" in line for line in outcome.warnings)


def test_copy_sample_files_never_overwrites(tmp_path: Path) -> None:
    """Existing targets are kept and unrelated files ignored."""
    drop = tmp_path / "drop"
    root = tmp_path / "root"
    drop.mkdir()
    root.mkdir()
    (drop / "web.config.sample").write_text("sample")
    (drop / "other.sample").write_text("ignored")
    (root / "web.config").write_text("existing")
    outcome = DeploymentOutcome()

    copied = copy_sample_files(drop, root, outcome)

    assert copied == []
    assert (root / "web.config").read_text() == "existing"
    assert not (root / "other").exists()


def test_bind_certificate_replaces_https_binding(
    tmp_path: Path, provisioner, make_package, open_registry
) -> None:
    """Binding a thumbprint replaces the existing HTTPS binding on that port."""
    package = make_package({"Publish/index.html": b"x"})
    assert provisioner.create_site("alpha", package, 443, "pw").succeeded

    outcome = provisioner.bind_certificate("alpha", "ab:cd:ef:01", ip="10.0.0.5")

    assert outcome.succeeded, outcome.log
    with open_registry() as registry:
        site = registry.get_site("alpha")
        assert site is not None
        assert site.bindings == [
            Binding(
                protocol="https",
                port=443,
                ip="10.0.0.5",
                certificate_store="My",
                certificate_hash=b"\xab\xcd\xef\x01",
            )
        ]


def test_bind_certificate_validation(provisioner, register_site, tmp_path: Path) -> None:
    """Bad thumbprints and unknown sites fail cleanly."""
    register_site("alpha", tmp_path / "alpha")

    odd = provisioner.bind_certificate("alpha", "ABC")
    missing = provisioner.bind_certificate("ghost", "ABCD")
    empty = provisioner.bind_certificate("alpha", "--")

    assert odd.succeeded is False and "Invalid hex string length" in odd.summary
    assert missing.summary == "Site 'ghost' not found."
    assert empty.succeeded is False


def test_list_sites(provisioner, register_site, tmp_path: Path) -> None:
    """Registered names are reported one per log line."""
    register_site("alpha", tmp_path / "alpha")
    register_site("beta", tmp_path / "beta", port=8081)

    outcome = provisioner.list_sites()

    assert outcome.succeeded
    assert outcome.log == ["alpha", "beta"]
    assert outcome.details["count"] == 2
