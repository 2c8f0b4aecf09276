"""Machine certificate trust store.

The store is modelled as a capability with a deterministic open/close
lifecycle: callers open it read-only to search by subject, or read-write to
add an identity, always through a context manager so the handle is released
even when the operation fails.
"""
from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey


class CertificateStoreError(RuntimeError):
    """Raised when the trust store cannot be read or written."""


@dataclass(frozen=True)
class CertificateIdentity:
    """TLS identity usable for an encrypted site binding.

    ``private_key`` is only populated while a freshly created identity is
    being exported and installed; identities read back from the store carry
    ``None`` and act as read references.
    """

    subject: str
    thumbprint: str
    certificate: x509.Certificate
    location: str
    private_key: RSAPrivateKey | None = None
    pfx_path: Path | None = None


def certificate_thumbprint(certificate: x509.Certificate) -> str:
    """Return the upper-case SHA-1 thumbprint of *certificate*."""
    return certificate.fingerprint(hashes.SHA1()).hex().upper()  # noqa: S303


def subject_name(certificate: x509.Certificate) -> str:
    """Return the RFC 4514 subject distinguished name of *certificate*."""
    return certificate.subject.rfc4514_string()


class StoreSession(Protocol):
    """Open handle on a trust store."""

    def find_by_subject(self, subject: str) -> list[CertificateIdentity]:
        """Return identities whose subject DN matches *subject*, ignoring case."""

    def add(self, identity: CertificateIdentity) -> None:
        """Add *identity* (certificate and private key) to the store."""


class CertificateStore(Protocol):
    """Capability interface for the machine trust store."""

    name: str

    def open(self, *, read_only: bool = True) -> AbstractContextManager[StoreSession]:
        """Open the store and yield a :class:`StoreSession`."""


class _DirectorySession:
    def __init__(self, store: DirectoryCertificateStore, *, read_only: bool) -> None:
        self._store = store
        self._read_only = read_only
        self._open = True

    def close(self) -> None:
        self._open = False

    def _ensure_open(self) -> None:
        if not self._open:
            raise CertificateStoreError("Certificate store handle has been closed.")

    def find_by_subject(self, subject: str) -> list[CertificateIdentity]:
        self._ensure_open()
        matches: list[CertificateIdentity] = []
        root = self._store.root
        if not root.is_dir():
            return matches
        for path in sorted(root.glob("*.pem")):
            try:
                certificate = x509.load_pem_x509_certificate(path.read_bytes())
            except (OSError, ValueError):
                continue
            if subject_name(certificate).casefold() != subject.casefold():
                continue
            matches.append(
                CertificateIdentity(
                    subject=subject,
                    thumbprint=certificate_thumbprint(certificate),
                    certificate=certificate,
                    location=self._store.name,
                )
            )
        return matches

    def add(self, identity: CertificateIdentity) -> None:
        self._ensure_open()
        if self._read_only:
            raise CertificateStoreError("Certificate store was opened read-only.")
        if identity.private_key is None:
            raise CertificateStoreError(
                f"Identity {identity.thumbprint} has no private key to persist."
            )
        root = self._store.root
        try:
            root.mkdir(parents=True, exist_ok=True)
            key_path = root / f"{identity.thumbprint}.key"
            key_bytes = identity.private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(key_bytes)
            cert_path = root / f"{identity.thumbprint}.pem"
            cert_path.write_bytes(identity.certificate.public_bytes(serialization.Encoding.PEM))
        except OSError as exc:
            raise CertificateStoreError(f"Failed to write certificate into {root}: {exc}") from exc


@dataclass(frozen=True)
class DirectoryCertificateStore:
    """Trust store kept as ``<thumbprint>.pem``/``<thumbprint>.key`` pairs."""

    root: Path
    name: str = "My"

    @contextmanager
    def open(self, *, read_only: bool = True) -> Iterator[_DirectorySession]:
        """Yield a session that is closed when the block exits."""
        session = _DirectorySession(self, read_only=read_only)
        try:
            yield session
        finally:
            session.close()


__all__ = [
    "CertificateIdentity",
    "CertificateStore",
    "CertificateStoreError",
    "DirectoryCertificateStore",
    "StoreSession",
    "certificate_thumbprint",
    "subject_name",
]
