"""
Credentials -- the account's signing key and certificate chain.

Responsibility:
    Holds loaded key material and looks it up per account.  Key material is
    loaded (PEM or PKCS#12), never generated or written, at this layer.

Architecture position:
    Kernel > Domain.  ``FileCredentialStore`` is the one component here that
    touches the filesystem.

Invariants enforced:
    - The private key is RSA and matches the certificate's public key.
    - Validity is checked against a caller-supplied date (the document's
      issue date), never against wall-clock time.
    - Cache fill is single-flight per account: concurrent first lookups for
      one account load the material once.

Failure modes:
    - KeyMaterialMissingError: nothing on file, or unreadable/mismatched.
    - KeyMaterialExpiredError: certificate not valid on the checked date.
"""

from __future__ import annotations

import base64
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Callable

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from dte_kernel.domain.values import is_valid_rut, normalize_rut
from dte_kernel.exceptions import KeyMaterialExpiredError, KeyMaterialMissingError
from dte_kernel.logging_config import get_logger

logger = get_logger("domain.credentials")


def _as_password(password: str | bytes | None) -> bytes | None:
    if password is None or isinstance(password, bytes):
        return password
    return password.encode("utf-8")


@dataclass(frozen=True)
class KeyMaterial:
    """
    An RSA private key with its certificate (and optional chain).

    Usage:
        material = KeyMaterial.from_pem(cert_pem, key_pem)
        material.check_valid_on(date(2024, 3, 1))
    """

    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    chain: tuple[x509.Certificate, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.private_key, rsa.RSAPrivateKey):
            raise KeyMaterialMissingError("-", "only RSA signing keys are supported")
        cert_key = self.certificate.public_key()
        if (
            not isinstance(cert_key, rsa.RSAPublicKey)
            or cert_key.public_numbers() != self.private_key.public_key().public_numbers()
        ):
            raise KeyMaterialMissingError("-", "private key does not match certificate")

    @classmethod
    def from_pem(
        cls,
        certificate_pem: bytes,
        private_key_pem: bytes,
        password: str | bytes | None = None,
        chain_pem: bytes | None = None,
    ) -> KeyMaterial:
        certificate = x509.load_pem_x509_certificate(certificate_pem)
        key = serialization.load_pem_private_key(private_key_pem, password=_as_password(password))
        chain = tuple(x509.load_pem_x509_certificates(chain_pem)) if chain_pem else ()
        return cls(private_key=key, certificate=certificate, chain=chain)

    @classmethod
    def from_pkcs12(cls, data: bytes, password: str | bytes | None = None) -> KeyMaterial:
        """Load a .p12/.pfx bundle, the format the Authority's CAs hand out."""
        key, certificate, extra = pkcs12.load_key_and_certificates(data, _as_password(password))
        if key is None or certificate is None:
            raise KeyMaterialMissingError("-", "PKCS#12 bundle lacks key or certificate")
        return cls(private_key=key, certificate=certificate, chain=tuple(extra or ()))

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    @property
    def subject_rut(self) -> str | None:
        """
        RUT of the certificate holder, if the certificate carries one.

        Looked up in the subject serialNumber attribute, then in any
        subject attribute whose value parses as a RUT.
        """
        attributes = list(
            self.certificate.subject.get_attributes_for_oid(NameOID.SERIAL_NUMBER)
        ) + list(self.certificate.subject)
        for attribute in attributes:
            value = str(attribute.value)
            if is_valid_rut(value):
                return normalize_rut(value)
        return None

    @property
    def not_valid_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_valid_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def certificate_der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    @property
    def certificate_b64(self) -> str:
        return base64.b64encode(self.certificate_der).decode("ascii")

    def is_valid_on(self, day: date) -> bool:
        return self.not_valid_before.date() <= day <= self.not_valid_after.date()

    def check_valid_on(self, day: date) -> None:
        """
        Raises:
            KeyMaterialExpiredError: If ``day`` is outside the validity window.
        """
        if not self.is_valid_on(day):
            raise KeyMaterialExpiredError(
                self.subject, self.not_valid_before, self.not_valid_after, day
            )


class CredentialStore(ABC):
    """Read-only lookup of key material by account."""

    @abstractmethod
    def get(self, account_id: str) -> KeyMaterial:
        """
        Raises:
            KeyMaterialMissingError
        """
        ...


class InMemoryCredentialStore(CredentialStore):
    """Store backed by a dict; used by tests and embedding applications."""

    def __init__(self, materials: dict[str, KeyMaterial] | None = None):
        self._materials = dict(materials or {})

    def put(self, account_id: str, material: KeyMaterial) -> None:
        self._materials[account_id] = material

    def get(self, account_id: str) -> KeyMaterial:
        try:
            return self._materials[account_id]
        except KeyError:
            raise KeyMaterialMissingError(account_id) from None


class CachingCredentialStore(CredentialStore):
    """
    Per-account cache in front of a loader, with single-flight fill.

    Contract:
        ``loader(account_id)`` is called at most once per account until
        ``invalidate``; concurrent callers for the same account wait for the
        in-flight load instead of starting their own.  Different accounts
        load independently.
    """

    def __init__(self, loader: Callable[[str], KeyMaterial]):
        self._loader = loader
        self._cache: dict[str, KeyMaterial] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(account_id, threading.Lock())

    def get(self, account_id: str) -> KeyMaterial:
        cached = self._cache.get(account_id)
        if cached is not None:
            return cached
        with self._lock_for(account_id):
            cached = self._cache.get(account_id)
            if cached is not None:
                return cached
            material = self._loader(account_id)
            self._cache[account_id] = material
            logger.info(
                "credentials_loaded",
                extra={
                    "account_id": account_id,
                    "subject": material.subject,
                    "not_valid_after": material.not_valid_after,
                },
            )
            return material

    def invalidate(self, account_id: str) -> None:
        with self._lock_for(account_id):
            self._cache.pop(account_id, None)


class FileCredentialStore(CachingCredentialStore):
    """
    Loads ``<base_dir>/<account_id>/bundle.p12`` or, failing that,
    ``certificate.pem`` + ``private_key.pem``.

    ``password_lookup(account_id)`` supplies the bundle/key password.
    Account ids must be plain directory names; anything that could leave
    ``base_dir`` is refused.
    """

    BUNDLE_NAME = "bundle.p12"
    CERTIFICATE_NAME = "certificate.pem"
    PRIVATE_KEY_NAME = "private_key.pem"

    def __init__(
        self,
        base_dir: Path | str,
        password_lookup: Callable[[str], str | bytes | None] | None = None,
    ):
        self._base_dir = Path(base_dir)
        self._password_lookup = password_lookup or (lambda account_id: None)
        super().__init__(self._load)

    def _load(self, account_id: str) -> KeyMaterial:
        if not account_id or account_id in (".", "..") or any(c in account_id for c in "/\\\0"):
            raise KeyMaterialMissingError(account_id or "-", "account id is not a plain directory name")
        account_dir = self._base_dir / account_id
        bundle = account_dir / self.BUNDLE_NAME
        cert_path = account_dir / self.CERTIFICATE_NAME
        key_path = account_dir / self.PRIVATE_KEY_NAME
        password = self._password_lookup(account_id)

        try:
            if bundle.is_file():
                return KeyMaterial.from_pkcs12(bundle.read_bytes(), password)
            if cert_path.is_file() and key_path.is_file():
                return KeyMaterial.from_pem(
                    cert_path.read_bytes(), key_path.read_bytes(), password
                )
        except KeyMaterialMissingError as exc:
            raise KeyMaterialMissingError(account_id, exc.reason) from exc
        except (ValueError, TypeError) as exc:
            raise KeyMaterialMissingError(account_id, f"unreadable key material: {exc}") from exc

        raise KeyMaterialMissingError(account_id, f"no credentials under {account_dir}")
