"""
StatusReconciler -- drives submission records to their final outcome.

Responsibility:
    Records submissions, applies upload results, queries the Authority for
    the processing status of a tracking id, fans a batch answer out to every
    document of the batch, and stores counterparty acceptance notices.

Architecture position:
    Kernel > Services.  Writes models/submission.py and
    models/authority_event.py; reads the Authority through AuthorityClient.

    A status check has three phases so callers can keep network I/O out of
    their transactions:

        check = reconciler.plan_check(document_id)      # txn 1 (read)
        reply = reconciler.fetch_status(check)          # no session use
        result = reconciler.apply_status(check, reply)  # txn 2 (write)

    ``check_status`` runs all three in the reconciler's own session.

Invariants enforced:
    - Every outcome change goes through SubmissionRecord.transition_to().
    - Terminal records are answered from the database unless forced; a
      forced check never changes a terminal outcome.
    - A transport failure leaves the record untouched.
    - Counterparty notices never touch ``outcome_state``.

Failure modes:
    - SubmissionNotFoundError: unknown document id.
    - TransportError / SessionError: Authority unreachable; state unchanged.
    - ProtocolError: unreadable status reply, logged with the raw payload.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from dte_kernel.domain.authority_responses import (
    ACCEPTANCE_NOTICE,
    BATCH_STATUS,
    NormalizedOutcome,
    parse_response,
)
from dte_kernel.domain.clock import Clock, SystemClock
from dte_kernel.domain.outcomes import OutcomeState, is_terminal
from dte_kernel.domain.values import DocumentEnvelope, normalize_rut
from dte_kernel.exceptions import (
    InvalidDocumentError,
    InvalidRutError,
    ProtocolError,
    SubmissionNotFoundError,
    TransportError,
)
from dte_kernel.logging_config import get_logger
from dte_kernel.models.authority_event import AuthorityEventType
from dte_kernel.models.submission import SubmissionRecord
from dte_kernel.services.authority_client import AuthorityClient
from dte_kernel.services.authority_events import AuthorityEvent, excerpt, persist_event
from dte_kernel.services.session_negotiator import SessionNegotiator
from dte_kernel.services.transmitter import fingerprint

logger = get_logger("services.status_reconciler")


@dataclass(frozen=True, slots=True)
class StatusResult:
    document_id: str
    state: OutcomeState
    tracking_id: str | None
    authority_code: str | None
    detail: str | None
    checked_at: datetime | None
    from_cache: bool = False
    counterparty_state: str | None = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.state)


@dataclass(frozen=True, slots=True)
class StatusCheck:
    """What a status query needs, captured inside a transaction."""

    document_id: str
    account_id: str
    issuer_rut: str
    tracking_id: str
    state: OutcomeState


@dataclass(frozen=True, slots=True)
class StatusReply:
    outcome: NormalizedOutcome
    raw: bytes
    response_time_ms: int


def _result(record: SubmissionRecord, from_cache: bool = False) -> StatusResult:
    return StatusResult(
        document_id=record.document_id,
        state=OutcomeState(record.outcome_state),
        tracking_id=record.tracking_id,
        authority_code=record.authority_code,
        detail=record.authority_message,
        checked_at=record.last_checked_at,
        from_cache=from_cache,
        counterparty_state=record.counterparty_state,
    )


class StatusReconciler:
    """
    Submission record state keeper.

    Contract:
        Flushes, never commits.  One instance per session.

    Usage:
        with session_scope() as session:
            reconciler = StatusReconciler(session, client, negotiator)
            result = reconciler.check_status(document_id)
    """

    def __init__(
        self,
        session: Session,
        client: AuthorityClient,
        negotiator: SessionNegotiator,
        clock: Clock | None = None,
    ):
        self._session = session
        self._client = client
        self._negotiator = negotiator
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Record lifecycle
    # ------------------------------------------------------------------

    def _get(self, document_id: str, lock: bool = False) -> SubmissionRecord:
        query = select(SubmissionRecord).where(SubmissionRecord.document_id == document_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        record = self._session.execute(query).scalar_one_or_none()
        if record is None:
            raise SubmissionNotFoundError(document_id)
        return record

    def get(self, document_id: str) -> SubmissionRecord:
        return self._get(document_id)

    def record_submission(self, envelope: DocumentEnvelope, document_id: str) -> SubmissionRecord:
        """Persist a signed document in PENDING before it is uploaded."""
        if not envelope.is_signed:
            raise InvalidDocumentError(
                f"document {envelope.document_id} is not signed", field="signed_xml"
            )
        record = SubmissionRecord(
            document_id=document_id,
            xml_id=envelope.document_id,
            account_id=envelope.account_id,
            document_kind=envelope.document_kind,
            folio=envelope.folio,
            issue_date=envelope.issue_date,
            total_amount=envelope.totals.total,
            issuer_rut=envelope.issuer.rut,
            counterparty_rut=envelope.counterparty.rut,
            signed_xml=envelope.signed_xml,
            fingerprint=fingerprint(envelope.signed_xml),
            outcome_state=OutcomeState.PENDING.value,
            attempts=0,
        )
        self._session.add(record)
        self._session.flush()
        logger.info(
            "submission_recorded",
            extra={
                "document_id": document_id,
                "account_id": envelope.account_id,
                "document_kind": envelope.document_kind,
                "folio": envelope.folio,
            },
        )
        return record

    def mark_sent(self, document_id: str, tracking_id: str, attempts: int = 1) -> SubmissionRecord:
        record = self._get(document_id, lock=True)
        record.transition_to(OutcomeState.SENT)
        now = self._clock.now_utc()
        record.tracking_id = tracking_id
        record.attempts = record.attempts + attempts
        record.submitted_at = now
        record.authority_code = "0"
        record.authority_message = "upload received"
        self._session.flush()
        self._log_transition(record)
        return record

    def mark_rejected(
        self, document_id: str, authority_code: str, detail: str, attempts: int = 1
    ) -> SubmissionRecord:
        record = self._get(document_id, lock=True)
        record.transition_to(OutcomeState.REJECTED)
        record.authority_code = authority_code
        record.authority_message = detail
        record.attempts = record.attempts + attempts
        record.last_checked_at = self._clock.now_utc()
        self._session.flush()
        self._log_transition(record)
        return record

    def mark_failed(self, document_id: str, reason: str, attempts: int) -> SubmissionRecord:
        record = self._get(document_id, lock=True)
        record.transition_to(OutcomeState.SUBMISSION_FAILED)
        record.authority_code = None
        record.authority_message = reason
        record.attempts = record.attempts + attempts
        self._session.flush()
        self._log_transition(record)
        return record

    def _log_transition(self, record: SubmissionRecord) -> None:
        logger.info(
            "submission_state_changed",
            extra={
                "document_id": record.document_id,
                "tracking_id": record.tracking_id,
                "outcome_state": record.outcome_state,
                "authority_code": record.authority_code,
            },
        )

    # ------------------------------------------------------------------
    # Status checks
    # ------------------------------------------------------------------

    def plan_check(self, document_id: str, force: bool = False) -> StatusCheck | StatusResult:
        """
        Decide whether a network query is needed.

        Returns the cached StatusResult when the record is terminal (and not
        forced) or has nothing to query yet; a StatusCheck otherwise.
        """
        record = self._get(document_id)
        if record.tracking_id is None or (record.is_terminal and not force):
            return _result(record, from_cache=True)
        return StatusCheck(
            document_id=record.document_id,
            account_id=record.account_id,
            issuer_rut=record.issuer_rut,
            tracking_id=record.tracking_id,
            state=OutcomeState(record.outcome_state),
        )

    def fetch_status(self, check: StatusCheck) -> StatusReply:
        """
        Query the Authority.  Touches no database state.

        Raises:
            TransportError, SessionError, ProtocolError
        """
        session = self._negotiator.get_session(check.account_id)
        started = time.monotonic()
        raw = self._client.query_status(check.tracking_id, check.issuer_rut, session.token)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        try:
            outcome = parse_response(BATCH_STATUS, raw)
        except ProtocolError as exc:
            logger.error(
                "status_reply_unreadable",
                extra={
                    "document_id": check.document_id,
                    "tracking_id": check.tracking_id,
                    "error": exc.reason,
                    "raw": excerpt(raw),
                },
            )
            raise
        return StatusReply(outcome=outcome, raw=raw, response_time_ms=elapsed_ms)

    def apply_status(self, check: StatusCheck, reply: StatusReply) -> StatusResult:
        """Apply a fetched status to every record sharing the tracking id."""
        outcome = reply.outcome
        now = self._clock.now_utc()
        persist_event(
            self._session,
            AuthorityEvent(
                account_id=check.account_id,
                event_type=AuthorityEventType.STATUS_CHECK,
                status=outcome.code,
                document_id=check.document_id,
                tracking_id=check.tracking_id,
                response=reply.raw,
                response_time_ms=reply.response_time_ms,
            ),
            self._clock,
        )

        batch = list(
            self._session.execute(
                select(SubmissionRecord)
                .where(
                    SubmissionRecord.tracking_id == check.tracking_id,
                    SubmissionRecord.account_id == check.account_id,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars()
        )
        for record in batch:
            self._apply_to_record(record, outcome, now)
        self._session.flush()

        return _result(self._get(check.document_id))

    def _apply_to_record(
        self, record: SubmissionRecord, outcome: NormalizedOutcome, now: datetime
    ) -> None:
        state, code, detail = self._state_for(record, outcome)
        record.last_checked_at = now
        if record.is_terminal:
            if state != OutcomeState(record.outcome_state):
                logger.warning(
                    "terminal_outcome_disagrees",
                    extra={
                        "document_id": record.document_id,
                        "outcome_state": record.outcome_state,
                        "authority_state": state.value,
                    },
                )
            return
        if state == OutcomeState(record.outcome_state) and state == OutcomeState.SENT:
            record.authority_code = code
            record.authority_message = detail
            return
        record.transition_to(state)
        record.authority_code = code
        record.authority_message = detail
        self._log_transition(record)

    @staticmethod
    def _state_for(
        record: SubmissionRecord, outcome: NormalizedOutcome
    ) -> tuple[OutcomeState, str, str]:
        """Per-document state: detail row when present, batch state otherwise."""
        for row in outcome.documents:
            if row.folio == record.folio and row.document_kind in (None, record.document_kind):
                return row.state, row.code, row.detail
        if outcome.documents and outcome.code == "EPR":
            # Processed batch: detail rows list only the documents with issues
            return OutcomeState.ACCEPTED, outcome.code, outcome.detail
        return outcome.state, outcome.code, outcome.detail

    def check_status(self, document_id: str, force: bool = False) -> StatusResult:
        """
        Current outcome of a document, querying the Authority if not final.

        Raises:
            SubmissionNotFoundError, TransportError, SessionError, ProtocolError
        """
        check = self.plan_check(document_id, force=force)
        if isinstance(check, StatusResult):
            return check
        try:
            reply = self.fetch_status(check)
        except TransportError as exc:
            persist_event(
                self._session,
                AuthorityEvent(
                    account_id=check.account_id,
                    event_type=AuthorityEventType.ERROR,
                    status=exc.code,
                    document_id=document_id,
                    tracking_id=check.tracking_id,
                    error_message=str(exc),
                ),
                self._clock,
            )
            raise
        return self.apply_status(check, reply)

    def pending_checks(self, older_than: datetime | None = None, limit: int = 50) -> list[str]:
        """Documents awaiting a final outcome, least recently checked first."""
        query = select(SubmissionRecord.document_id).where(
            SubmissionRecord.outcome_state == OutcomeState.SENT.value,
            SubmissionRecord.tracking_id.is_not(None),
        )
        if older_than is not None:
            query = query.where(
                or_(
                    SubmissionRecord.last_checked_at.is_(None),
                    SubmissionRecord.last_checked_at < older_than,
                )
            )
        query = query.order_by(SubmissionRecord.submitted_at, SubmissionRecord.document_id).limit(limit)
        return list(self._session.execute(query).scalars())

    # ------------------------------------------------------------------
    # Counterparty acceptance
    # ------------------------------------------------------------------

    def apply_acceptance_notice(self, xml: bytes | str) -> list[StatusResult]:
        """
        Store a counterparty's commercial response on the matching records.

        Documents not issued here are logged and skipped.

        Raises:
            ProtocolError: Unreadable notice.
        """
        notice = parse_response(ACCEPTANCE_NOTICE, xml)
        now = self._clock.now_utc()
        results: list[StatusResult] = []
        for row in notice.documents:
            query = select(SubmissionRecord).where(
                SubmissionRecord.document_kind == row.document_kind,
                SubmissionRecord.folio == row.folio,
            )
            if row.issuer_rut:
                try:
                    query = query.where(SubmissionRecord.issuer_rut == normalize_rut(row.issuer_rut))
                except InvalidRutError:
                    logger.warning("acceptance_notice_bad_rut", extra={"rut": row.issuer_rut})
                    continue
            records = list(self._session.execute(query.with_for_update()).scalars())
            if len(records) != 1:
                logger.warning(
                    "acceptance_notice_unmatched",
                    extra={
                        "document_kind": row.document_kind,
                        "folio": row.folio,
                        "issuer_rut": row.issuer_rut,
                        "matches": len(records),
                    },
                )
                continue

            record = records[0]
            record.counterparty_state = row.state.value
            record.counterparty_message = row.detail
            record.counterparty_responded_at = now
            persist_event(
                self._session,
                AuthorityEvent(
                    account_id=record.account_id,
                    event_type=AuthorityEventType.ACCEPTANCE,
                    status=row.code,
                    document_id=record.document_id,
                    response=xml,
                ),
                self._clock,
            )
            logger.info(
                "acceptance_notice_applied",
                extra={
                    "document_id": record.document_id,
                    "counterparty_state": record.counterparty_state,
                },
            )
            results.append(_result(record))
        self._session.flush()
        return results
