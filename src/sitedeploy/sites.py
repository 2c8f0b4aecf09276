"""Create brand-new sites and manage their HTTPS bindings."""
from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable
from pathlib import Path

from .certificates import CertificateError, CertificateProvisioner, thumbprint_to_bytes
from .certstore import CertificateIdentity
from .deploy import start_component
from .outcome import DeploymentOutcome
from .package import (
    DEFAULT_PROTECTED_FILES,
    DEFAULT_ROOT_MARKER,
    PackageError,
    ensure_readable,
    extract_package,
    skip_existing_protected,
)
from .providers.registry import Binding, SiteHandle, SiteRegistry

DEFAULT_SAMPLE_SUFFIX = ".sample"
DEFAULT_POOL_RUNTIME = "v4.0"
DEFAULT_HTTPS_PORT = 443

RegistryFactory = Callable[[], SiteRegistry]


class SiteValidationError(ValueError):
    """Raised when site creation arguments are rejected up front."""


def validate_site_name(name: str) -> str:
    """Return the stripped *name* or raise when it is not one path segment."""
    cleaned = name.strip()
    if not cleaned:
        raise SiteValidationError("Site name must not be empty.")
    if cleaned in {".", ".."} or "/" in cleaned or "\\" in cleaned:
        raise SiteValidationError(
            f"Site name '{cleaned}' must be a single folder name without path separators."
        )
    return cleaned


def validate_port(port: int) -> int:
    """Return *port* when it lies in 1-65535."""
    if not 1 <= port <= 65535:
        raise SiteValidationError(f"Port {port} is outside the range 1-65535.")
    return port


def copy_sample_files(
    package_dir: Path,
    site_root: Path,
    outcome: DeploymentOutcome,
    *,
    protected_files: Iterable[str] = DEFAULT_PROTECTED_FILES,
    suffix: str = DEFAULT_SAMPLE_SUFFIX,
) -> list[Path]:
    """Seed *site_root* with ``<protected>.sample`` files found in *package_dir*.

    Matching is case-insensitive. Existing targets are never overwritten and a
    failed copy is logged without aborting.
    """
    wanted = {f"{name.lower()}{suffix.lower()}": name for name in protected_files}
    copied: list[Path] = []
    try:
        candidates = sorted(path for path in package_dir.iterdir() if path.is_file())
    except OSError as exc:
        outcome.add_log(f"Warning: Could not scan '{package_dir}' for sample files: {exc}")
        return copied

    for sample in candidates:
        target_name = wanted.get(sample.name.lower())
        if target_name is None:
            continue
        target = site_root / sample.name[: -len(suffix)]
        if target.exists():
            outcome.add_log(f"Sample file not copied, {target.name} already exists.")
            continue
        try:
            shutil.copyfile(sample, target)
        except OSError as exc:
            outcome.add_log(f"Warning: Could not copy {sample.name}: {exc}")
            continue
        outcome.add_log(f"Copied {sample.name} to {target}")
        copied.append(target)
    return copied


class SiteProvisioner:
    """Provision new sites end to end.

    A new site gets its own folder under the base path, a certificate issued
    for ``<site>.<local domain>``, a dedicated execution pool and a single
    HTTPS binding. The package payload is then extracted and the site started.
    """

    def __init__(
        self,
        open_registry: RegistryFactory,
        certificates: CertificateProvisioner,
        *,
        base_path: Path,
        certs_path: Path,
        pool_runtime: str = DEFAULT_POOL_RUNTIME,
        root_marker: str = DEFAULT_ROOT_MARKER,
        protected_files: Iterable[str] = DEFAULT_PROTECTED_FILES,
        sample_suffix: str = DEFAULT_SAMPLE_SUFFIX,
    ) -> None:
        """Store collaborators and the per-call defaults."""
        self._open_registry = open_registry
        self._certificates = certificates
        self._base_path = base_path
        self._certs_path = certs_path
        self._pool_runtime = pool_runtime
        self._root_marker = root_marker
        self._protected = tuple(protected_files)
        self._sample_suffix = sample_suffix

    def create_site(
        self,
        site_name: str,
        package_path: Path,
        port: int,
        pfx_password: str,
        base_path: Path | None = None,
        certs_path: Path | None = None,
        pool_runtime: str | None = None,
    ) -> DeploymentOutcome:
        """Create, populate and start a new site named *site_name*."""
        outcome = DeploymentOutcome(summary=f"Creating new site: {site_name}")
        created_root: Path | None = None
        registry_touched = False

        try:
            try:
                name = validate_site_name(site_name)
                validate_port(port)
                ensure_readable(package_path)
            except (SiteValidationError, PackageError) as exc:
                outcome.fail(str(exc), exc)
                return outcome

            root = (base_path or self._base_path) / name
            outcome.add_log(f"Site folder: {root}")
            if root.exists():
                outcome.fail(f"Site folder '{root}' already exists. Aborting.")
                return outcome
            root.mkdir(parents=True)
            created_root = root
            outcome.add_log("Site folder created.")

            copy_sample_files(
                package_path.parent,
                root,
                outcome,
                protected_files=self._protected,
                suffix=self._sample_suffix,
            )

            outcome.add_log("Creating certificate...")
            try:
                identity = self._certificates.provision(
                    name, certs_path or self._certs_path, pfx_password, outcome
                )
            except CertificateError as exc:
                self._discard_root(created_root, outcome)
                outcome.fail(f"Certificate creation failed for site '{name}': {exc}", exc)
                return outcome
            outcome.details["thumbprint"] = identity.thumbprint

            with self._open_registry() as registry:
                if registry.get_site(name) is not None:
                    self._discard_root(created_root, outcome)
                    outcome.fail(f"Site '{name}' is already registered.")
                    return outcome

                runtime = pool_runtime or self._pool_runtime
                pool = registry.add_pool(name, runtime)
                outcome.add_log(f"Execution pool '{pool.name}' created with runtime {runtime}.")
                site = registry.add_site(name, root, port, pool_name=pool.name)
                outcome.add_log(f"Site '{site.name}' created.")
                self._replace_default_binding(site, port, identity, outcome)
                registry.commit()
                registry_touched = True
                outcome.add_log("Site and execution pool committed.")

                extract_package(
                    package_path,
                    root,
                    outcome,
                    root_marker=self._root_marker,
                    should_skip=skip_existing_protected(self._protected),
                )

                start_component("execution pool", pool, outcome)
                start_component("site", site, outcome)
                registry.commit()

            outcome.details["root"] = root
            outcome.succeed(f"Site '{name}' created successfully.")
            outcome.add_log("Done.")
        except Exception as exc:  # noqa: BLE001 - terminal safety net
            if created_root is not None and not registry_touched:
                self._discard_root(created_root, outcome)
            elif registry_touched:
                outcome.add_log(
                    f"Warning: Site '{site_name}' was left partially created. "
                    "Remove the site, its execution pool and its folder before retrying."
                )
            outcome.fail(f"Error creating site {site_name}: {exc}", exc)
        return outcome

    def bind_certificate(
        self,
        site_name: str,
        thumbprint: str,
        *,
        ip: str = "*",
        port: int = DEFAULT_HTTPS_PORT,
    ) -> DeploymentOutcome:
        """Point the site's HTTPS binding on *port* at the certificate *thumbprint*."""
        outcome = DeploymentOutcome(summary=f"Binding certificate to site: {site_name}")
        try:
            try:
                validate_port(port)
                certificate_hash = thumbprint_to_bytes(thumbprint)
            except ValueError as exc:
                outcome.fail(str(exc), exc)
                return outcome
            if not certificate_hash:
                outcome.fail("Certificate thumbprint must not be empty.")
                return outcome

            with self._open_registry() as registry:
                site = registry.get_site(site_name) if site_name.strip() else None
                if site is None:
                    outcome.fail(f"Site '{site_name}' not found.")
                    return outcome
                for binding in list(site.bindings):
                    if binding.protocol == "https" and binding.port == port:
                        site.remove_binding(binding)
                        outcome.add_log(
                            f"Removed existing HTTPS binding {binding.binding_information}."
                        )
                new_binding = Binding(
                    protocol="https",
                    port=port,
                    ip=ip,
                    certificate_store=self._certificates.store_name,
                    certificate_hash=certificate_hash,
                )
                site.add_binding(new_binding)
                outcome.add_log(
                    f"Added HTTPS binding {new_binding.binding_information} "
                    f"with certificate {certificate_hash.hex().upper()}."
                )
                registry.commit()
            outcome.succeed(f"Certificate bound to site '{site.name}' on port {port}.")
        except Exception as exc:  # noqa: BLE001 - terminal safety net
            outcome.fail(f"Error binding certificate to site {site_name}: {exc}", exc)
        return outcome

    def list_sites(self) -> DeploymentOutcome:
        """Return an outcome whose log holds one registered site name per line."""
        outcome = DeploymentOutcome(summary="Listing sites")
        try:
            with self._open_registry() as registry:
                names = registry.site_names()
        except Exception as exc:  # noqa: BLE001 - terminal safety net
            outcome.fail(f"Error retrieving sites: {exc}", exc)
            return outcome
        for name in names:
            outcome.add_log(name)
        outcome.details["count"] = len(names)
        outcome.succeed(f"Found {len(names)} site(s).")
        return outcome

    # ------------------------------------------------------------------
    def _replace_default_binding(
        self,
        site: SiteHandle,
        port: int,
        identity: CertificateIdentity,
        outcome: DeploymentOutcome,
    ) -> None:
        for binding in list(site.bindings):
            if binding.protocol == "http":
                site.remove_binding(binding)
                outcome.add_log(f"Removed default HTTP binding {binding.binding_information}.")
        site.add_binding(
            Binding(
                protocol="https",
                port=port,
                certificate_store=identity.location,
                certificate_hash=thumbprint_to_bytes(identity.thumbprint),
            )
        )
        outcome.add_log(f"HTTPS binding added on port {port} (Thumbprint: {identity.thumbprint}).")

    @staticmethod
    def _discard_root(root: Path, outcome: DeploymentOutcome) -> None:
        try:
            shutil.rmtree(root)
        except OSError as exc:
            outcome.add_log(f"Warning: Could not remove site folder '{root}': {exc}")
            return
        outcome.add_log(f"Removed site folder '{root}'.")


__all__ = [
    "DEFAULT_HTTPS_PORT",
    "DEFAULT_POOL_RUNTIME",
    "DEFAULT_SAMPLE_SUFFIX",
    "SiteProvisioner",
    "SiteValidationError",
    "copy_sample_files",
    "validate_port",
    "validate_site_name",
]
