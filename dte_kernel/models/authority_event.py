"""
Module: dte_kernel.models.authority_event
Responsibility: Append-only log of every exchange with the Authority
    (authentication, upload, status check, acceptance notice, error) with
    its latency, for operational audit.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Rows are never updated or deleted (db/immutability.py).
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dte_kernel.db.base import Base


class AuthorityEventType(str, Enum):
    AUTHENTICATION = "authentication"
    UPLOAD = "upload"
    STATUS_CHECK = "status_check"
    ACCEPTANCE = "acceptance"
    ERROR = "error"


class AuthorityEventLog(Base):
    """One request/response exchange with the Authority."""

    __tablename__ = "authority_event_logs"

    __table_args__ = (
        Index("idx_authority_event_account", "account_id", "created_at"),
        Index("idx_authority_event_tracking", "tracking_id"),
    )

    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    document_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    tracking_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    status: Mapped[str | None] = mapped_column(String(40), nullable=True)

    # First bytes of the raw response, for protocol forensics
    response_excerpt: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
