"""
Authority exchange events.

Services that talk to the Authority describe each exchange as an
``AuthorityEvent`` and hand it to an ``EventSink``.  ``persist_event`` is the
sink body that writes one AuthorityEventLog row in the caller's session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from dte_kernel.domain.clock import Clock
from dte_kernel.models.authority_event import AuthorityEventLog, AuthorityEventType

EXCERPT_LIMIT = 2000


@dataclass(frozen=True, slots=True)
class AuthorityEvent:
    account_id: str
    event_type: AuthorityEventType
    status: str | None = None
    document_id: str | None = None
    tracking_id: str | None = None
    response: bytes | str | None = None
    error_message: str | None = None
    response_time_ms: int | None = None


EventSink = Callable[[AuthorityEvent], None]


def excerpt(raw: bytes | str | None) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("ISO-8859-1", errors="replace")
    return raw[:EXCERPT_LIMIT]


def persist_event(session: Session, event: AuthorityEvent, clock: Clock) -> AuthorityEventLog:
    row = AuthorityEventLog(
        account_id=event.account_id,
        event_type=AuthorityEventType(event.event_type).value,
        status=event.status,
        document_id=event.document_id,
        tracking_id=event.tracking_id,
        response_excerpt=excerpt(event.response),
        error_message=event.error_message,
        response_time_ms=event.response_time_ms,
        created_at=clock.now_utc(),
    )
    session.add(row)
    session.flush()
    return row
