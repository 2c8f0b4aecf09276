"""Self-signed certificate provisioning for HTTPS site bindings.

Provisioning is idempotent per site: when the trust store already holds an
identity whose subject is exactly ``CN=<site>.<local domain>`` it is returned
unchanged and no key material is generated. Otherwise a new RSA identity is
created, exported to a password-protected PKCS#12 file, reloaded from that
export and installed into the store.
"""
from __future__ import annotations

import dataclasses
import string
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from .certstore import (
    CertificateIdentity,
    CertificateStore,
    CertificateStoreError,
    certificate_thumbprint,
    subject_name,
)
from .outcome import DeploymentOutcome

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
DEFAULT_LOCAL_DOMAIN = "local"
DEFAULT_VALIDITY_YEARS = 5


class CertificateError(RuntimeError):
    """Base class for certificate provisioning failures."""


class CertificateCreationError(CertificateError):
    """Raised when keys or the PKCS#12 export cannot be produced."""


class CertificateInstallError(CertificateError):
    """Raised when a new identity cannot be added to the trust store."""


def thumbprint_to_bytes(thumbprint: str) -> bytes:
    """Convert a hex thumbprint into raw bytes.

    Any character that is not a hex digit (separators, whitespace, invisible
    marks copied from a UI) is dropped first. The remaining digits must come
    in pairs.
    """
    digits = "".join(char for char in thumbprint if char in string.hexdigits)
    if len(digits) % 2 != 0:
        raise ValueError("Invalid hex string length.")
    return bytes.fromhex(digits)


def add_years(moment: datetime, years: int) -> datetime:
    """Return *moment* shifted by *years*, clamping 29 February to the 28th."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


class CertificateProvisioner:
    """Return a usable TLS identity for a site, creating one when needed."""

    def __init__(
        self,
        store: CertificateStore,
        *,
        local_domain: str = DEFAULT_LOCAL_DOMAIN,
        validity_years: int = DEFAULT_VALIDITY_YEARS,
    ) -> None:
        """Bind the provisioner to *store* and the naming/validity policy."""
        self._store = store
        self._local_domain = local_domain.strip(".") or DEFAULT_LOCAL_DOMAIN
        self._validity_years = validity_years

    @property
    def store_name(self) -> str:
        """Return the name of the trust store identities are installed into."""
        return self._store.name

    def common_name(self, site_name: str) -> str:
        """Return ``<site>.<local domain>``."""
        return f"{site_name.strip()}.{self._local_domain}"

    def subject_for(self, site_name: str) -> str:
        """Return the canonical subject distinguished name for *site_name*."""
        return f"CN={self.common_name(site_name)}"

    def find_existing(self, site_name: str) -> CertificateIdentity | None:
        """Return the first stored identity matching the site's subject."""
        subject = self.subject_for(site_name)
        with self._store.open(read_only=True) as session:
            matches = session.find_by_subject(subject)
        return matches[0] if matches else None

    def provision(
        self,
        site_name: str,
        pfx_output_dir: Path,
        pfx_password: str,
        outcome: DeploymentOutcome | None = None,
    ) -> CertificateIdentity:
        """Reuse or create, export and install the identity for *site_name*."""
        log = outcome or DeploymentOutcome()
        subject = self.subject_for(site_name)

        log.add_log(f"Checking for existing certificate with subject: {subject}")
        existing = self.find_existing(site_name)
        if existing is not None:
            log.add_log(
                f"Using existing certificate: {existing.subject} "
                f"(Thumbprint: {existing.thumbprint})"
            )
            return existing

        log.add_log("No existing certificate found. Creating a new self-signed certificate.")
        created = self.create_self_signed(site_name, pfx_output_dir, pfx_password, log)
        installed = self.install(created, log)
        log.add_log(
            f"New certificate created and installed: {installed.subject} "
            f"(Thumbprint: {installed.thumbprint})"
        )
        return installed

    def create_self_signed(
        self,
        site_name: str,
        pfx_output_dir: Path,
        pfx_password: str,
        log: DeploymentOutcome,
    ) -> CertificateIdentity:
        """Generate keys, export a PKCS#12 bundle and reload it from disk."""
        common_name = self.common_name(site_name)
        if not pfx_password:
            raise CertificateCreationError("A non-empty PFX password is required.")
        password = pfx_password.encode("utf-8")
        pfx_path = pfx_output_dir / f"{site_name.strip()}.pfx"
        try:
            log.add_log(f"Creating self-signed certificate: {common_name}")
            key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)
            name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
            now = datetime.now(UTC)
            certificate = (
                x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now)
                .not_valid_after(add_years(now, self._validity_years))
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=False)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=False,
                )
                .add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                    critical=False,
                )
                .sign(key, hashes.SHA256())
            )
            log.add_log(f"Certificate created in memory. Exporting to PFX: {pfx_path}")

            if not pfx_output_dir.exists():
                pfx_output_dir.mkdir(parents=True, exist_ok=True)
                log.add_log(f"Created certificate output directory: {pfx_output_dir}")
            bundle = pkcs12.serialize_key_and_certificates(
                name=common_name.encode("utf-8"),
                key=key,
                cert=certificate,
                cas=None,
                encryption_algorithm=serialization.BestAvailableEncryption(password),
            )
            pfx_path.write_bytes(bundle)
            log.add_log("PFX file created.")

            reloaded = pkcs12.load_pkcs12(pfx_path.read_bytes(), password)
        except (OSError, ValueError, TypeError) as exc:
            message = f"Error creating self-signed certificate: {exc}"
            log.add_log(message)
            raise CertificateCreationError(message) from exc

        if reloaded.cert is None or not isinstance(reloaded.key, rsa.RSAPrivateKey):
            message = f"Exported PFX {pfx_path} did not round-trip a certificate and RSA key."
            log.add_log(message)
            raise CertificateCreationError(message)

        loaded_cert = reloaded.cert.certificate
        identity = CertificateIdentity(
            subject=subject_name(loaded_cert),
            thumbprint=certificate_thumbprint(loaded_cert),
            certificate=loaded_cert,
            location=str(pfx_path),
            private_key=reloaded.key,
            pfx_path=pfx_path,
        )
        log.add_log(
            "Certificate loaded from PFX for installation. "
            f"Subject: {identity.subject}, Thumbprint: {identity.thumbprint}"
        )
        return identity

    def install(
        self,
        identity: CertificateIdentity,
        log: DeploymentOutcome,
    ) -> CertificateIdentity:
        """Add *identity* to the store and return a read reference to it."""
        log.add_log(
            f"Installing certificate: {identity.subject} "
            f"(Thumbprint: {identity.thumbprint}) into store {self._store.name}."
        )
        try:
            with self._store.open(read_only=False) as session:
                session.add(identity)
        except CertificateStoreError as exc:
            message = f"Error installing certificate: {exc}"
            log.add_log(message)
            raise CertificateInstallError(message) from exc
        log.add_log("Certificate installed successfully.")
        return dataclasses.replace(identity, private_key=None, location=self._store.name)


__all__ = [
    "CertificateCreationError",
    "CertificateError",
    "CertificateInstallError",
    "CertificateProvisioner",
    "add_years",
    "thumbprint_to_bytes",
]
