"""Tests for the per-family Authority response parsers."""

import pytest

from dte_kernel.domain.authority_responses import (
    ACCEPTANCE_NOTICE,
    BATCH_STATUS,
    DOCUMENT_DETAIL,
    UPLOAD,
    PARSERS,
    parse_response,
)
from dte_kernel.domain.outcomes import OutcomeState
from dte_kernel.exceptions import MalformedResponseError, UnrecognizedResponseCodeError
from tests.fake_authority import acceptance_notice, status_reply, upload_ack

ISSUER = "76086428-5"


class TestUploadAck:
    def test_received(self):
        outcome = parse_response(UPLOAD, upload_ack("0", "4711"))
        assert outcome.state == OutcomeState.SENT
        assert outcome.tracking_id == "4711"
        assert outcome.is_processing

    @pytest.mark.parametrize("status", ["1", "2", "3", "5", "6", "7", "99"])
    def test_rejections(self, status):
        outcome = parse_response(UPLOAD, upload_ack(status))
        assert outcome.state == OutcomeState.REJECTED
        assert outcome.code == status
        assert outcome.tracking_id is None

    def test_unknown_status_is_not_guessed(self):
        raw = upload_ack("42")
        with pytest.raises(UnrecognizedResponseCodeError) as exc_info:
            parse_response(UPLOAD, raw)
        assert exc_info.value.response_code == "42"
        assert exc_info.value.raw == raw

    def test_received_without_tracking_id(self):
        raw = b"<RECEPCIONDTE><STATUS>0</STATUS></RECEPCIONDTE>"
        with pytest.raises(MalformedResponseError):
            parse_response(UPLOAD, raw)

    @pytest.mark.parametrize("raw", [b"", b"   ", b"<html>oops", b"<RECEPCIONDTE/>"])
    def test_malformed(self, raw):
        with pytest.raises(MalformedResponseError):
            parse_response(UPLOAD, raw)


class TestBatchStatus:
    @pytest.mark.parametrize("code", ["REC", "SOK", "CRT", "FOK", "PDR", "PRD"])
    def test_processing_codes_stay_sent(self, code):
        outcome = parse_response(BATCH_STATUS, status_reply("10", code))
        assert outcome.state == OutcomeState.SENT
        assert outcome.tracking_id == "10"

    @pytest.mark.parametrize(
        "code,state",
        [
            ("DOK", OutcomeState.ACCEPTED),
            ("RPR", OutcomeState.ACCEPTED_WITH_DISCREPANCIES),
            ("RLV", OutcomeState.ACCEPTED_WITH_DISCREPANCIES),
            ("RCH", OutcomeState.REJECTED),
            ("RSC", OutcomeState.REJECTED),
            ("RFR", OutcomeState.REJECTED),
            ("RCT", OutcomeState.REJECTED),
            ("FAU", OutcomeState.REJECTED),
            ("FNA", OutcomeState.NOT_FOUND),
        ],
    )
    def test_final_codes(self, code, state):
        assert parse_response(BATCH_STATUS, status_reply("10", code)).state == state

    def test_processed_all_accepted(self):
        raw = status_reply("10", "EPR", "Envio Procesado", informados=2, aceptados=2, rechazados=0, reparos=0)
        outcome = parse_response(BATCH_STATUS, raw)
        assert outcome.state == OutcomeState.ACCEPTED
        assert outcome.statistics == {"informados": 2, "aceptados": 2, "rechazados": 0, "reparos": 0}

    def test_processed_all_rejected(self):
        raw = status_reply("10", "EPR", informados=1, aceptados=0, rechazados=1, reparos=0)
        assert parse_response(BATCH_STATUS, raw).state == OutcomeState.REJECTED

    def test_processed_partially(self):
        raw = status_reply(
            "10", "EPR", informados=2, aceptados=1, rechazados=1, reparos=0,
            rows=((33, 101, "RCH", "Error en monto"),),
        )
        outcome = parse_response(BATCH_STATUS, raw)
        assert outcome.state == OutcomeState.ACCEPTED_WITH_DISCREPANCIES
        assert len(outcome.documents) == 1
        row = outcome.documents[0]
        assert (row.document_kind, row.folio, row.state) == (33, 101, OutcomeState.REJECTED)
        assert "Error en monto" in row.detail

    def test_glosa_is_detail(self):
        outcome = parse_response(BATCH_STATUS, status_reply("10", "RCT", "Error en caratula"))
        assert outcome.detail == "Error en caratula"

    def test_unknown_code(self):
        with pytest.raises(UnrecognizedResponseCodeError):
            parse_response(BATCH_STATUS, status_reply("10", "ZZZ"))

    def test_missing_estado(self):
        with pytest.raises(MalformedResponseError):
            parse_response(BATCH_STATUS, b"<RESPUESTA><TRACKID>1</TRACKID></RESPUESTA>")


class TestDocumentDetail:
    def test_single_row(self):
        raw = status_reply("10", "EPR", rows=((33, 5, "RPR", "Giro no coincide"),))
        outcome = parse_response(DOCUMENT_DETAIL, raw)
        assert outcome.state == OutcomeState.ACCEPTED_WITH_DISCREPANCIES
        assert outcome.folio == 5

    def test_requires_exactly_one_row(self):
        with pytest.raises(MalformedResponseError):
            parse_response(DOCUMENT_DETAIL, status_reply("10", "EPR"))


class TestAcceptanceNotice:
    @pytest.mark.parametrize(
        "estado,state",
        [
            ("0", OutcomeState.ACCEPTED),
            ("1", OutcomeState.ACCEPTED_WITH_DISCREPANCIES),
            ("2", OutcomeState.REJECTED),
        ],
    )
    def test_single_document(self, estado, state):
        outcome = parse_response(ACCEPTANCE_NOTICE, acceptance_notice(ISSUER, ((33, 7, estado, "ok"),)))
        assert outcome.state == state
        assert outcome.documents[0].folio == 7
        assert outcome.documents[0].issuer_rut == ISSUER

    def test_rejection_dominates(self):
        raw = acceptance_notice(ISSUER, ((33, 7, "0", "ok"), (33, 8, "2", "no")))
        outcome = parse_response(ACCEPTANCE_NOTICE, raw)
        assert outcome.state == OutcomeState.REJECTED
        assert outcome.code == "*"

    def test_unknown_estado(self):
        with pytest.raises(UnrecognizedResponseCodeError):
            parse_response(ACCEPTANCE_NOTICE, acceptance_notice(ISSUER, ((33, 7, "9", "?"),)))

    def test_no_results(self):
        with pytest.raises(MalformedResponseError):
            parse_response(ACCEPTANCE_NOTICE, b"<RespuestaDTE/>")


class TestDispatch:
    def test_every_family_registered(self):
        assert set(PARSERS) == {UPLOAD, BATCH_STATUS, DOCUMENT_DETAIL, ACCEPTANCE_NOTICE}

    def test_unknown_family(self):
        with pytest.raises(ValueError):
            parse_response("telepathy", b"<x/>")

    def test_code_tables_only_map_to_known_states(self):
        for parser in PARSERS.values():
            for state, _ in parser.codes.values():
                assert isinstance(state, OutcomeState)
