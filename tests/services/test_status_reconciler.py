"""Tests for StatusReconciler: record lifecycle, status checks and acceptance notices."""

import uuid
from datetime import date, timedelta

import pytest
from sqlalchemy import select

from dte_kernel.domain.outcomes import OutcomeState
from dte_kernel.exceptions import (
    AuthorityUnavailableError,
    InvalidDocumentError,
    InvalidStateTransitionError,
    MalformedResponseError,
    SubmissionNotFoundError,
)
from dte_kernel.models.authority_event import AuthorityEventLog, AuthorityEventType
from dte_kernel.services.status_reconciler import StatusCheck, StatusReconciler, StatusResult
from tests.conftest import ACCOUNT_ID, ISSUER_RUT
from tests.fake_authority import acceptance_notice, status_reply


@pytest.fixture
def reconciler(session, authority_client, negotiator, clock):
    return StatusReconciler(session, authority_client, negotiator, clock)


@pytest.fixture
def make_signed(canonicalizer, signer, key_material, line_items, issuer, buyer):
    def _make(folio: int, kind: int = 33):
        envelope = canonicalizer.canonicalize(
            ACCOUNT_ID, kind, line_items, issuer, buyer, folio, date(2024, 3, 1)
        )
        return signer.sign(envelope, key_material)

    return _make


@pytest.fixture
def record_sent(reconciler, make_signed):
    """Record a document and mark it SENT under ``tracking_id``."""

    def _record(folio: int, tracking_id: str = "1001") -> str:
        document_id = str(uuid.uuid4())
        reconciler.record_submission(make_signed(folio), document_id)
        reconciler.mark_sent(document_id, tracking_id)
        return document_id

    return _record


def _events(session, event_type):
    return list(
        session.execute(
            select(AuthorityEventLog).where(AuthorityEventLog.event_type == event_type.value)
        ).scalars()
    )


class TestRecordLifecycle:
    def test_record_starts_pending(self, reconciler, make_signed):
        record = reconciler.record_submission(make_signed(1), "doc-1")
        assert record.outcome_state == OutcomeState.PENDING.value
        assert record.xml_id == "F1T33"
        assert record.total_amount == 16900
        assert len(record.fingerprint) == 64

    def test_unsigned_document_refused(self, reconciler, canonicalizer, line_items, issuer, buyer):
        envelope = canonicalizer.canonicalize(ACCOUNT_ID, 33, line_items, issuer, buyer, 1, date(2024, 3, 1))
        with pytest.raises(InvalidDocumentError):
            reconciler.record_submission(envelope, "doc-1")

    def test_mark_sent(self, reconciler, make_signed, clock):
        reconciler.record_submission(make_signed(1), "doc-1")
        record = reconciler.mark_sent("doc-1", "4711", attempts=2)
        assert record.outcome_state == OutcomeState.SENT.value
        assert record.tracking_id == "4711"
        assert record.attempts == 2
        assert record.submitted_at == clock.now_utc()

    def test_failed_then_sent(self, reconciler, make_signed):
        reconciler.record_submission(make_signed(1), "doc-1")
        reconciler.mark_failed("doc-1", "timeout", attempts=3)
        record = reconciler.mark_sent("doc-1", "4711")
        assert record.outcome_state == OutcomeState.SENT.value
        assert record.attempts == 4

    def test_rejected_is_final(self, reconciler, make_signed):
        reconciler.record_submission(make_signed(1), "doc-1")
        reconciler.mark_rejected("doc-1", "7", "Schema invalido")
        with pytest.raises(InvalidStateTransitionError):
            reconciler.mark_sent("doc-1", "4711")

    def test_unknown_document(self, reconciler):
        with pytest.raises(SubmissionNotFoundError):
            reconciler.get("missing")


class TestCheckStatus:
    def test_accepted(self, reconciler, record_sent, fake_authority):
        document_id = record_sent(1)
        fake_authority.status_replies["1001"] = status_reply("1001", "DOK", "Documento Aceptado")

        result = reconciler.check_status(document_id)

        assert result.state == OutcomeState.ACCEPTED
        assert result.authority_code == "DOK"
        assert result.is_terminal
        assert not result.from_cache
        assert fake_authority.status_queries[0]["TRACKID"] == "1001"

    def test_processing_stays_sent(self, reconciler, record_sent):
        document_id = record_sent(1)
        result = reconciler.check_status(document_id)
        assert result.state == OutcomeState.SENT
        assert result.authority_code == "REC"
        assert result.checked_at is not None

    def test_terminal_answered_from_database(self, reconciler, record_sent, fake_authority):
        document_id = record_sent(1)
        fake_authority.status_replies["1001"] = status_reply("1001", "DOK")
        reconciler.check_status(document_id)

        again = reconciler.check_status(document_id)

        assert again.state == OutcomeState.ACCEPTED
        assert again.from_cache
        assert len(fake_authority.status_queries) == 1

    def test_forced_check_never_changes_terminal_outcome(self, reconciler, record_sent, fake_authority, captured_logs):
        document_id = record_sent(1)
        fake_authority.status_replies["1001"] = status_reply("1001", "DOK")
        reconciler.check_status(document_id)
        fake_authority.status_replies["1001"] = status_reply("1001", "RCH", "Rechazado")

        result = reconciler.check_status(document_id, force=True)

        assert result.state == OutcomeState.ACCEPTED
        assert len(fake_authority.status_queries) == 2
        assert any(r["message"] == "terminal_outcome_disagrees" for r in captured_logs())

    def test_pending_document_has_nothing_to_query(self, reconciler, make_signed, fake_authority):
        reconciler.record_submission(make_signed(1), "doc-1")
        result = reconciler.check_status("doc-1")
        assert result.state == OutcomeState.PENDING
        assert fake_authority.status_queries == []

    def test_batch_answer_fans_out(self, reconciler, record_sent, fake_authority):
        ids = [record_sent(folio, tracking_id="2000") for folio in (1, 2, 3)]
        fake_authority.status_replies["2000"] = status_reply(
            "2000", "EPR", "Envio Procesado",
            informados=3, aceptados=1, rechazados=1, reparos=1,
            rows=((33, 2, "RCH", "Monto incorrecto"), (33, 3, "RPR", "Giro no coincide")),
        )

        reconciler.check_status(ids[0])

        states = [reconciler.get(i).outcome_state for i in ids]
        assert states == [
            OutcomeState.ACCEPTED.value,
            OutcomeState.REJECTED.value,
            OutcomeState.ACCEPTED_WITH_DISCREPANCIES.value,
        ]
        assert reconciler.get(ids[1]).authority_message == "Monto incorrecto"
        assert len(fake_authority.status_queries) == 1

    def test_transport_failure_leaves_record_untouched(self, reconciler, record_sent, fake_authority, session):
        document_id = record_sent(1)
        fake_authority.status_script.extend(["timeout"])
        with pytest.raises(AuthorityUnavailableError):
            reconciler.check_status(document_id)
        record = reconciler.get(document_id)
        assert record.outcome_state == OutcomeState.SENT.value
        assert record.last_checked_at is None
        assert len(_events(session, AuthorityEventType.ERROR)) == 1

    def test_unreadable_reply(self, reconciler, record_sent, fake_authority, captured_logs):
        document_id = record_sent(1)
        fake_authority.status_script.append(b"<html>maintenance</html>")
        with pytest.raises(MalformedResponseError):
            reconciler.check_status(document_id)
        assert reconciler.get(document_id).outcome_state == OutcomeState.SENT.value
        record = next(r for r in captured_logs() if r["message"] == "status_reply_unreadable")
        assert "maintenance" in record["raw"]

    def test_status_check_logged_as_event(self, reconciler, record_sent, session):
        document_id = record_sent(1)
        reconciler.check_status(document_id)
        events = _events(session, AuthorityEventType.STATUS_CHECK)
        assert len(events) == 1
        assert events[0].tracking_id == "1001"
        assert events[0].status == "REC"
        assert "REC" in events[0].response_excerpt

    def test_three_phase_check(self, reconciler, record_sent, fake_authority):
        document_id = record_sent(1)
        fake_authority.status_replies["1001"] = status_reply("1001", "DOK")

        check = reconciler.plan_check(document_id)
        assert isinstance(check, StatusCheck)
        assert check.issuer_rut == ISSUER_RUT
        reply = reconciler.fetch_status(check)
        result = reconciler.apply_status(check, reply)

        assert isinstance(result, StatusResult)
        assert result.state == OutcomeState.ACCEPTED


class TestPendingChecks:
    def test_lists_sent_documents_only(self, reconciler, record_sent, make_signed, fake_authority):
        waiting = record_sent(1, tracking_id="1")
        done = record_sent(2, tracking_id="2")
        reconciler.record_submission(make_signed(3), "pending")
        fake_authority.status_replies["2"] = status_reply("2", "DOK")
        reconciler.check_status(done)

        assert reconciler.pending_checks() == [waiting]

    def test_older_than(self, reconciler, record_sent, clock):
        checked = record_sent(1, tracking_id="1")
        never_checked = record_sent(2, tracking_id="2")
        reconciler.check_status(checked)

        assert set(reconciler.pending_checks()) == {checked, never_checked}
        assert reconciler.pending_checks(older_than=clock.now_utc()) == [never_checked]
        later = clock.now_utc() + timedelta(minutes=1)
        assert set(reconciler.pending_checks(older_than=later)) == {checked, never_checked}

    def test_limit(self, reconciler, record_sent):
        for folio in range(1, 6):
            record_sent(folio, tracking_id=str(folio))
        assert len(reconciler.pending_checks(limit=3)) == 3


class TestAcceptanceNotice:
    def test_counterparty_response_stored(self, reconciler, record_sent, session):
        document_id = record_sent(1)
        results = reconciler.apply_acceptance_notice(
            acceptance_notice(ISSUER_RUT, ((33, 1, "1", "Acepta con reparos"),))
        )

        assert [r.document_id for r in results] == [document_id]
        record = reconciler.get(document_id)
        assert record.counterparty_state == OutcomeState.ACCEPTED_WITH_DISCREPANCIES.value
        assert record.counterparty_message == "Acepta con reparos"
        assert record.outcome_state == OutcomeState.SENT.value
        assert len(_events(session, AuthorityEventType.ACCEPTANCE)) == 1

    def test_unknown_document_skipped(self, reconciler, record_sent, captured_logs):
        record_sent(1)
        results = reconciler.apply_acceptance_notice(
            acceptance_notice(ISSUER_RUT, ((33, 999, "0", "ok"),))
        )
        assert results == []
        assert any(r["message"] == "acceptance_notice_unmatched" for r in captured_logs())

    def test_other_issuer_skipped(self, reconciler, record_sent):
        record_sent(1)
        assert reconciler.apply_acceptance_notice(
            acceptance_notice("22222222-2", ((33, 1, "0", "ok"),))
        ) == []
