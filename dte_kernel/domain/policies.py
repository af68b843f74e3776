"""
Policies -- explicit configuration structs consumed by kernel components.

Responsibility:
    Frozen, validated settings objects passed to the canonicalizer, signer,
    negotiator, transmitter, reconciler and allocator at construction.  The
    kernel never reads configuration files itself; ``dte_config`` builds
    these from YAML and hands them in.

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from dte_kernel.exceptions import UnknownDocumentKindError

SIGNATURE_ALGORITHMS: Mapping[str, str] = MappingProxyType({
    "rsa-sha1": "http://www.w3.org/2000/09/xmldsig#rsa-sha1",
    "rsa-sha256": "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256",
})

DIGEST_ALGORITHMS: Mapping[str, str] = MappingProxyType({
    "sha1": "http://www.w3.org/2000/09/xmldsig#sha1",
    "sha256": "http://www.w3.org/2001/04/xmlenc#sha256",
})


@dataclass(frozen=True, slots=True)
class EndpointSet:
    """Absolute URLs of the four Authority endpoints."""

    seed_url: str
    token_url: str
    upload_url: str
    status_url: str


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    ``attempts`` counts the first try: attempts=3 means one call plus two
    retries.
    """

    attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("RetryPolicy.attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("RetryPolicy.backoff_seconds must be >= 0")

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        delay = self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff_seconds)


@dataclass(frozen=True, slots=True)
class SessionPolicy:
    """Token lifetime and handshake retry budget."""

    token_ttl_seconds: int = 3000
    immediate_retries: int = 1


@dataclass(frozen=True, slots=True)
class SigningConfig:
    """XML-DSig parameters. Defaults match the Authority's rsa-sha1 profile."""

    signature_algorithm: str = "rsa-sha1"
    digest_algorithm: str = "sha1"
    encoding: str = "ISO-8859-1"

    def __post_init__(self) -> None:
        if self.signature_algorithm not in SIGNATURE_ALGORITHMS:
            raise ValueError(f"Unsupported signature algorithm: {self.signature_algorithm}")
        if self.digest_algorithm not in DIGEST_ALGORITHMS:
            raise ValueError(f"Unsupported digest algorithm: {self.digest_algorithm}")

    @property
    def signature_uri(self) -> str:
        return SIGNATURE_ALGORITHMS[self.signature_algorithm]

    @property
    def digest_uri(self) -> str:
        return DIGEST_ALGORITHMS[self.digest_algorithm]


@dataclass(frozen=True, slots=True)
class DocumentKindDef:
    """
    One document kind the Authority accepts.

    exempt_only: kind may not carry taxable lines (34, 41).
    requires_reference: correction kinds must reference an earlier
        document (56, 61).
    """

    code: int
    name: str
    exempt_only: bool = False
    requires_reference: bool = False


@dataclass(frozen=True, slots=True)
class DocumentPolicy:
    """Tax rate and the catalogue of document kinds."""

    tax_rate: Decimal
    document_kinds: Mapping[int, DocumentKindDef] = field(default_factory=dict)
    namespace: str = "http://www.sii.cl/SiiDte"
    schema_version: str = "1.0"

    def __post_init__(self) -> None:
        object.__setattr__(self, "document_kinds", MappingProxyType(dict(self.document_kinds)))

    def kind(self, code: int) -> DocumentKindDef:
        """
        Raises:
            UnknownDocumentKindError
        """
        try:
            return self.document_kinds[int(code)]
        except (KeyError, ValueError, TypeError):
            raise UnknownDocumentKindError(code) from None


@dataclass(frozen=True, slots=True)
class FolioPolicy:
    renewal_threshold_pct: Decimal = Decimal("80")


@dataclass(frozen=True, slots=True)
class PollingPolicy:
    """Background status polling cadence."""

    interval_seconds: float = 300.0
    min_recheck_seconds: float = 60.0
    batch_limit: int = 50
