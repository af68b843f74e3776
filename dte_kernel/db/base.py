"""
Declarative base and column types shared by every issuance table.

Architecture position:
    Kernel > DB.  Lowest import target of the kernel; imports nothing from
    models, domain or services.

Invariants enforced:
    - Primary keys are uuid4 values stored as 36-character strings, so the
      same schema runs on SQLite and PostgreSQL.
    - Timestamps come back timezone-aware UTC on every backend.  SQLite
      loses tzinfo on storage; naive values are re-tagged on load and
      refused on write.
    - Python ``int`` columns are BIGINT: folios and amounts in pesos do not
      fit comfortably in 32 bits.
"""

from datetime import datetime, timezone
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """uuid.UUID on the Python side, CHAR-like String(36) in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else PyUUID(value)


class UTCDateTime(TypeDecorator):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TimestampedBase(Base):
    """
    Adds row bookkeeping times.

    ``created_at`` / ``updated_at`` describe the row, not the document; they
    may change on records whose signed content is frozen.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now(), nullable=False
    )


UUID = PyUUID
