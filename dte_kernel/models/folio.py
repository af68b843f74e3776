"""
Module: dte_kernel.models.folio
Responsibility: ORM persistence for authority-granted folio ranges, the
    per-(account, kind) counter, and the history of every folio handed out.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One FolioCounter per (account_id, document_kind) (uq_folio_counter_key).
    - One IssuedFolio per (account_id, document_kind, folio) (uq_issued_folio):
      no folio is ever handed out twice.
    - FolioCounter.current_value never decreases (db/immutability.py).
    - Open ranges of one key never overlap (FolioAllocator.grant_range).

Failure modes:
    - IntegrityError on duplicate counter or duplicate issued folio.

Audit relevance:
    IssuedFolio is the audit trail gap reports are built from; voided folios
    stay in it with their reason.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dte_kernel.db.base import TimestampedBase


class FolioStatus(str, Enum):
    """Lifecycle of a single issued folio."""

    ISSUED = "issued"      # handed out by allocate()
    RESERVED = "reserved"  # claimed explicitly by reserve()
    VOIDED = "voided"      # released; kept for audit, never reusable


class RangeRetirement(str, Enum):
    EXHAUSTED = "exhausted"
    SUPERSEDED = "superseded"


class FolioRange(TimestampedBase):
    """
    A block of folios the Authority authorized for one (account, kind).

    ``retired_at`` NULL means the range is open.
    """

    __tablename__ = "folio_ranges"

    __table_args__ = (
        Index("idx_folio_range_key", "account_id", "document_kind", "retired_at"),
    )

    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_kind: Mapped[int] = mapped_column(Integer, nullable=False)
    range_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    range_end: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Grant proof (authorization XML) as received
    grant_xml: Mapped[str | None] = mapped_column(Text, nullable=True)

    granted_at: Mapped[datetime] = mapped_column(nullable=False)
    retired_at: Mapped[datetime | None] = mapped_column(nullable=True)
    retired_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)

    @property
    def is_open(self) -> bool:
        return self.retired_at is None

    @property
    def size(self) -> int:
        return self.range_end - self.range_start + 1

    def contains(self, folio: int) -> bool:
        return self.range_start <= folio <= self.range_end

    def __repr__(self) -> str:
        return (
            f"<FolioRange {self.account_id} kind={self.document_kind} "
            f"[{self.range_start}, {self.range_end}]{'' if self.is_open else ' retired'}>"
        )


class FolioCounter(TimestampedBase):
    """
    Last folio handed out for one (account, kind).

    Row-level locking (``SELECT ... FOR UPDATE``) serializes allocators,
    across processes, for the same key.
    """

    __tablename__ = "folio_counters"

    __table_args__ = (
        UniqueConstraint("account_id", "document_kind", name="uq_folio_counter_key"),
    )

    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_kind: Mapped[int] = mapped_column(Integer, nullable=False)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class IssuedFolio(TimestampedBase):
    """One folio that left the allocator (issued, reserved, or later voided)."""

    __tablename__ = "issued_folios"

    __table_args__ = (
        UniqueConstraint("account_id", "document_kind", "folio", name="uq_issued_folio"),
        Index("idx_issued_folio_issued_at", "account_id", "document_kind", "issued_at"),
    )

    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_kind: Mapped[int] = mapped_column(Integer, nullable=False)
    folio: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(nullable=False)

    # Document that consumed the folio (set by the issuance pipeline)
    document_id: Mapped[str | None] = mapped_column(String(40), nullable=True)

    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    void_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
