"""
AuthorityConfig schema.

The parsed form of one jurisdiction's configuration fragment.  Everything
the kernel consumes is already expressed as a kernel policy struct
(``dte_kernel.domain.policies``), so wiring is a matter of handing the
fields to constructors.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from dte_kernel.domain.policies import (
    DocumentKindDef,
    DocumentPolicy,
    EndpointSet,
    FolioPolicy,
    PollingPolicy,
    RetryPolicy,
    SessionPolicy,
    SigningConfig,
)


@dataclass(frozen=True)
class AuthorityConfig:
    """Resolved configuration for one jurisdiction and environment."""

    jurisdiction: str
    authority_name: str
    authority_rut: str
    currency: str
    tax_rate: Decimal
    environment: str
    endpoints: EndpointSet
    timeout_seconds: float
    retry: RetryPolicy
    session: SessionPolicy
    signing: SigningConfig
    document_kinds: tuple[DocumentKindDef, ...]
    folio: FolioPolicy
    polling: PollingPolicy
    checksum: str

    @property
    def document_policy(self) -> DocumentPolicy:
        return DocumentPolicy(
            tax_rate=self.tax_rate,
            document_kinds={k.code: k for k in self.document_kinds},
        )
