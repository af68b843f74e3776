"""
ORM-level immutability enforcement for issued records.

Responsibility:
    Blocks, before any SQL is emitted, the writes that would let a folio be
    reused or a transmitted document be altered:

    Entity              | Immutable                                   | Delete
    --------------------|---------------------------------------------|--------
    IssuedFolio         | account_id, document_kind, folio, issued_at | blocked
    FolioCounter        | current_value may never decrease            | blocked
    SubmissionRecord    | document identity, signed_xml, fingerprint; | blocked
                        | outcome_state once terminal                 |
    AuthorityEventLog   | every field (append-only)                   | blocked

Architecture position:
    Kernel > DB.  Listeners are registered by ``register_immutability_listeners``
    (called from the engine setup of the service layer and from test
    fixtures).

How it works:
    SQLAlchemy fires ``before_update`` / ``before_delete`` mapper events during
    flush.  Each check inspects attribute history and raises
    ImmutabilityViolationError, which aborts the flush; the transaction is
    rolled back by ``session_scope``.
"""

from sqlalchemy import event, inspect

from dte_kernel.exceptions import ImmutabilityViolationError
from dte_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_ISSUED_FOLIO_FROZEN = ("account_id", "document_kind", "folio", "issued_at")
_SUBMISSION_FROZEN = (
    "document_id",
    "xml_id",
    "account_id",
    "document_kind",
    "folio",
    "issue_date",
    "total_amount",
    "issuer_rut",
    "counterparty_rut",
    "signed_xml",
    "fingerprint",
)


def _blocked(entity_type: str, entity_id, operation: str, reason: str) -> ImmutabilityViolationError:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            "reason": reason,
        },
    )
    return ImmutabilityViolationError(entity_type, str(entity_id), reason)


def _changed_fields(target, fields: tuple[str, ...]) -> list[str]:
    attrs = inspect(target).attrs
    return [name for name in fields if getattr(attrs, name).history.has_changes()]


def _check_issued_folio_update(mapper, connection, target):
    changed = _changed_fields(target, _ISSUED_FOLIO_FROZEN)
    if changed:
        raise _blocked(
            "IssuedFolio", target.id, "UPDATE",
            f"folio identity is immutable (attempted: {', '.join(changed)})",
        )


def _check_folio_counter_update(mapper, connection, target):
    history = inspect(target).attrs.current_value.history
    if history.deleted and history.added and history.added[0] < history.deleted[0]:
        raise _blocked(
            "FolioCounter", target.id, "UPDATE",
            f"counter cannot decrease ({history.deleted[0]} -> {history.added[0]})",
        )


def _check_submission_update(mapper, connection, target):
    from dte_kernel.domain.outcomes import is_terminal

    changed = _changed_fields(target, _SUBMISSION_FROZEN)
    if changed:
        raise _blocked(
            "SubmissionRecord", target.document_id, "UPDATE",
            f"transmitted document is immutable (attempted: {', '.join(changed)})",
        )
    state_history = inspect(target).attrs.outcome_state.history
    if state_history.deleted and state_history.added:
        previous = state_history.deleted[0]
        if is_terminal(previous) and state_history.added[0] != previous:
            raise _blocked(
                "SubmissionRecord", target.document_id, "UPDATE",
                f"outcome {previous} is terminal",
            )


def _check_event_log_update(mapper, connection, target):
    raise _blocked("AuthorityEventLog", target.id, "UPDATE", "event log is append-only")


def _make_delete_guard(entity_type: str):
    def _check_delete(mapper, connection, target):
        raise _blocked(entity_type, target.id, "DELETE", f"{entity_type} rows cannot be deleted")

    _check_delete.__name__ = f"_check_{entity_type.lower()}_delete"
    return _check_delete


_check_issued_folio_delete = _make_delete_guard("IssuedFolio")
_check_folio_counter_delete = _make_delete_guard("FolioCounter")
_check_submission_delete = _make_delete_guard("SubmissionRecord")
_check_event_log_delete = _make_delete_guard("AuthorityEventLog")


def _listeners():
    from dte_kernel.models import AuthorityEventLog, FolioCounter, IssuedFolio, SubmissionRecord

    return [
        (IssuedFolio, "before_update", _check_issued_folio_update),
        (IssuedFolio, "before_delete", _check_issued_folio_delete),
        (FolioCounter, "before_update", _check_folio_counter_update),
        (FolioCounter, "before_delete", _check_folio_counter_delete),
        (SubmissionRecord, "before_update", _check_submission_update),
        (SubmissionRecord, "before_delete", _check_submission_delete),
        (AuthorityEventLog, "before_update", _check_event_log_update),
        (AuthorityEventLog, "before_delete", _check_event_log_delete),
    ]


def register_immutability_listeners() -> None:
    """Install every listener. Idempotent."""
    for target, event_name, fn in _listeners():
        if not event.contains(target, event_name, fn):
            event.listen(target, event_name, fn)
    logger.debug("immutability_listeners_registered")


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """Remove every listener. Tests only."""
    for target, event_name, fn in _listeners():
        _safe_remove_listener(target, event_name, fn)
