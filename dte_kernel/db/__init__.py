"""Database layer - engine, base classes, types."""

from dte_kernel.db.base import UUID, Base, TimestampedBase, UTCDateTime, UUIDString
from dte_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from dte_kernel.db.types import round_amount, to_decimal

__all__ = [
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "Base",
    "TimestampedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
    "round_amount",
    "to_decimal",
]
