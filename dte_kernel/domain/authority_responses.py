"""
Authority response parsers -- one tagged variant per response family.

Responsibility:
    Translates the Authority's inconsistent raw vocabularies into the single
    ``OutcomeState`` space.  Each family owns its own code table; there is
    no shared parser branching on which fields happen to be present.

    Family            | Source                                  | Codes
    ------------------|-----------------------------------------|-------------------------
    upload            | synchronous upload ack (RECEPCIONDTE)   | 0,1,2,3,5,6,7,99
    batch_status      | tracking-id status query (RESP_HDR)     | REC,SOK,...,DOK,RCH,...
    document_detail   | per-document rows of a status reply     | ACEPTADO,REPARO,RECHAZADO
    acceptance_notice | counterparty reply (RespuestaDTE)       | EstadoDTE 0,1,2

Architecture position:
    Kernel > Domain -- pure, zero I/O.  lxml with local-name() XPath so
    namespace prefixes in the Authority's replies do not matter.

Invariants enforced:
    - A code missing from its family's table is NEVER coerced to a guessed
      outcome: UnrecognizedResponseCodeError carries the raw payload.
    - Every parser returns a NormalizedOutcome, whatever the family.

Failure modes:
    - MalformedResponseError: not XML, or a required element is absent.
    - UnrecognizedResponseCodeError: code not in the family's table.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from lxml import etree

from dte_kernel.domain.outcomes import OutcomeState
from dte_kernel.exceptions import MalformedResponseError, UnrecognizedResponseCodeError

UPLOAD = "upload"
BATCH_STATUS = "batch_status"
DOCUMENT_DETAIL = "document_detail"
ACCEPTANCE_NOTICE = "acceptance_notice"

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, recover=False)


@dataclass(frozen=True)
class NormalizedOutcome:
    """
    Family-independent result of parsing one Authority response.

    ``documents`` fans a batch-level answer out to individual documents
    when the Authority supplied per-document detail.
    """

    family: str
    state: OutcomeState
    code: str
    detail: str
    tracking_id: str | None = None
    document_kind: int | None = None
    folio: int | None = None
    issuer_rut: str | None = None
    documents: tuple[NormalizedOutcome, ...] = ()
    statistics: Mapping[str, int] = field(default_factory=dict)

    @property
    def is_processing(self) -> bool:
        return self.state == OutcomeState.SENT


def _load(family: str, raw: bytes | str) -> etree._Element:
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    if not raw or not raw.strip():
        raise MalformedResponseError(family, "empty response", raw)
    try:
        return etree.fromstring(raw, parser=_PARSER)
    except etree.XMLSyntaxError as exc:
        raise MalformedResponseError(family, f"not well-formed XML: {exc}", raw) from exc


def _text(node: etree._Element, name: str) -> str | None:
    """Text of the first descendant named ``name`` (any namespace)."""
    found = node.xpath(".//*[local-name()=$name]", name=name)
    if not found or found[0].text is None:
        return None
    return found[0].text.strip()


def _child_text(node: etree._Element, name: str) -> str | None:
    found = node.xpath("*[local-name()=$name]", name=name)
    if not found or found[0].text is None:
        return None
    return found[0].text.strip()


def _int_or_none(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


class ResponseParser(ABC):
    """One response family and its code table."""

    family: str
    codes: Mapping[str, tuple[OutcomeState, str]]

    @abstractmethod
    def parse(self, raw: bytes | str) -> NormalizedOutcome:
        ...

    def lookup(self, code: str, raw: bytes | str | None) -> tuple[OutcomeState, str]:
        try:
            return self.codes[code]
        except KeyError:
            raise UnrecognizedResponseCodeError(self.family, code, raw) from None


class UploadAckParser(ResponseParser):
    """
    Synchronous upload acknowledgement.

    ``STATUS`` 0 means the envelope was received and a ``TRACKID`` issued;
    any other status is an immediate rejection with no tracking id.
    """

    family = UPLOAD
    codes = MappingProxyType({
        "0": (OutcomeState.SENT, "upload received"),
        "1": (OutcomeState.REJECTED, "schema error"),
        "2": (OutcomeState.REJECTED, "signature error"),
        "3": (OutcomeState.REJECTED, "authority system error"),
        "5": (OutcomeState.REJECTED, "authentication error"),
        "6": (OutcomeState.REJECTED, "company not authorized to submit"),
        "7": (OutcomeState.REJECTED, "upload error"),
        "99": (OutcomeState.REJECTED, "unknown upload error"),
    })

    def parse(self, raw: bytes | str) -> NormalizedOutcome:
        root = _load(self.family, raw)
        status = _text(root, "STATUS")
        if status is None:
            raise MalformedResponseError(self.family, "missing STATUS", raw)
        state, message = self.lookup(status, raw)

        tracking_id = _text(root, "TRACKID")
        if state == OutcomeState.SENT and not tracking_id:
            raise MalformedResponseError(self.family, "STATUS 0 without TRACKID", raw)

        extra = _text(root, "DETAIL") or _text(root, "ERROR")
        detail = f"{message}: {extra}" if extra else message
        return NormalizedOutcome(
            family=self.family,
            state=state,
            code=status,
            detail=detail,
            tracking_id=tracking_id if state == OutcomeState.SENT else None,
        )


class DocumentDetailParser(ResponseParser):
    """Per-document rows (``DETALLE_REP_RECH`` / ``DETALLE``) of a status reply."""

    family = DOCUMENT_DETAIL
    codes = MappingProxyType({
        "ACEPTADO": (OutcomeState.ACCEPTED, "document accepted"),
        "DOK": (OutcomeState.ACCEPTED, "document accepted"),
        "REPARO": (OutcomeState.ACCEPTED_WITH_DISCREPANCIES, "document accepted with discrepancies"),
        "RPR": (OutcomeState.ACCEPTED_WITH_DISCREPANCIES, "document accepted with discrepancies"),
        "RLV": (OutcomeState.ACCEPTED_WITH_DISCREPANCIES, "document accepted with minor discrepancies"),
        "RECHAZADO": (OutcomeState.REJECTED, "document rejected"),
        "RCH": (OutcomeState.REJECTED, "document rejected"),
    })

    def parse(self, raw: bytes | str) -> NormalizedOutcome:
        root = _load(self.family, raw)
        rows = self.parse_rows(root, raw)
        if len(rows) != 1:
            raise MalformedResponseError(self.family, f"expected one detail row, got {len(rows)}", raw)
        return rows[0]

    def parse_rows(self, root: etree._Element, raw: bytes | str | None = None) -> tuple[NormalizedOutcome, ...]:
        nodes = root.xpath(".//*[local-name()='DETALLE_REP_RECH']") or root.xpath(
            ".//*[local-name()='DETALLE']"
        )
        return tuple(self._parse_row(node, raw) for node in nodes)

    def _parse_row(self, node: etree._Element, raw: bytes | str | None) -> NormalizedOutcome:
        estado = (_child_text(node, "ESTADO") or "").upper()
        if not estado:
            raise MalformedResponseError(self.family, "detail row without ESTADO", raw)
        state, message = self.lookup(estado, raw)
        folio = _int_or_none(_child_text(node, "FOLIO"))
        if folio is None:
            raise MalformedResponseError(self.family, "detail row without FOLIO", raw)
        error = _child_text(node, "DESC_ERR")
        return NormalizedOutcome(
            family=self.family,
            state=state,
            code=estado,
            detail=f"{message}: {error}" if error else message,
            document_kind=_int_or_none(_child_text(node, "TIPO_DOC")),
            folio=folio,
            issuer_rut=_child_text(node, "RUT_EMISOR"),
        )


class BatchStatusParser(ResponseParser):
    """
    Status of a tracking id (single document or batch).

    Processing codes keep the document in SENT.  ``EPR`` (processed) is
    resolved from the accepted/rejected/discrepancy counts; per-document
    rows, when present, are attached as ``documents``.
    """

    family = BATCH_STATUS
    PROCESSED = "EPR"
    codes = MappingProxyType({
        # still processing
        "REC": (OutcomeState.SENT, "envelope received"),
        "SOK": (OutcomeState.SENT, "schema validated"),
        "CRT": (OutcomeState.SENT, "cover sheet validated"),
        "FOK": (OutcomeState.SENT, "envelope signature validated"),
        "PDR": (OutcomeState.SENT, "envelope in process"),
        "PRD": (OutcomeState.SENT, "envelope in process"),
        # processed -- resolved from counts
        "EPR": (OutcomeState.ACCEPTED, "envelope processed"),
        # resolved
        "DOK": (OutcomeState.ACCEPTED, "document accepted"),
        "DNK": (OutcomeState.ACCEPTED_WITH_DISCREPANCIES, "document accepted with discrepancies"),
        "RPR": (OutcomeState.ACCEPTED_WITH_DISCREPANCIES, "accepted with discrepancies"),
        "RLV": (OutcomeState.ACCEPTED_WITH_DISCREPANCIES, "accepted with minor discrepancies"),
        "FAU": (OutcomeState.REJECTED, "sender not authorized"),
        "FAN": (OutcomeState.REJECTED, "document content rejected"),
        "EMP": (OutcomeState.REJECTED, "company rejected"),
        "TMC": (OutcomeState.REJECTED, "issuer RUT changed"),
        "TMD": (OutcomeState.REJECTED, "document kind changed"),
        "RSC": (OutcomeState.REJECTED, "rejected: schema error"),
        "RFR": (OutcomeState.REJECTED, "rejected: signature error"),
        "RCT": (OutcomeState.REJECTED, "rejected: cover sheet error"),
        "RPT": (OutcomeState.REJECTED, "rejected: repeated envelope"),
        "RCH": (OutcomeState.REJECTED, "rejected"),
        # unknown to the Authority
        "FNA": (OutcomeState.NOT_FOUND, "document not found"),
        "AND": (OutcomeState.NOT_FOUND, "document not registered"),
    })

    def __init__(self, detail_parser: DocumentDetailParser | None = None):
        self._detail_parser = detail_parser or DocumentDetailParser()

    def parse(self, raw: bytes | str) -> NormalizedOutcome:
        root = _load(self.family, raw)
        estado = _text(root, "ESTADO")
        if not estado:
            raise MalformedResponseError(self.family, "missing ESTADO", raw)
        estado = estado.upper()
        state, message = self.lookup(estado, raw)

        statistics = {
            name.lower(): value
            for name in ("INFORMADOS", "ACEPTADOS", "RECHAZADOS", "REPAROS")
            if (value := _int_or_none(_text(root, name))) is not None
        }
        documents = self._detail_parser.parse_rows(root, raw)

        if estado == self.PROCESSED:
            state = self._resolve_processed(statistics, documents)

        glosa = _text(root, "GLOSA")
        errors = [
            f"{node.get('CODIGO')}: {(node.text or '').strip()}" if node.get("CODIGO") else (node.text or "").strip()
            for node in root.xpath(".//*[local-name()='ERROR']")
        ]
        detail = glosa or message
        if errors:
            detail = f"{detail} ({'; '.join(e for e in errors if e)})"

        return NormalizedOutcome(
            family=self.family,
            state=state,
            code=estado,
            detail=detail,
            tracking_id=_text(root, "TRACKID"),
            documents=documents,
            statistics=statistics,
        )

    @staticmethod
    def _resolve_processed(
        statistics: Mapping[str, int], documents: tuple[NormalizedOutcome, ...]
    ) -> OutcomeState:
        informed = statistics.get("informados", 0)
        rejected = statistics.get("rechazados", 0)
        discrepancies = statistics.get("reparos", 0)
        row_states = {d.state for d in documents}
        if informed and rejected == informed:
            return OutcomeState.REJECTED
        if documents and row_states == {OutcomeState.REJECTED} and not informed:
            return OutcomeState.REJECTED
        if rejected or discrepancies or row_states - {OutcomeState.ACCEPTED}:
            return OutcomeState.ACCEPTED_WITH_DISCREPANCIES
        return OutcomeState.ACCEPTED


class AcceptanceNoticeParser(ResponseParser):
    """Counterparty commercial response (``RespuestaDTE/ResultadoDTE``)."""

    family = ACCEPTANCE_NOTICE
    codes = MappingProxyType({
        "0": (OutcomeState.ACCEPTED, "accepted by counterparty"),
        "1": (OutcomeState.ACCEPTED_WITH_DISCREPANCIES, "accepted by counterparty with discrepancies"),
        "2": (OutcomeState.REJECTED, "rejected by counterparty"),
    })

    def parse(self, raw: bytes | str) -> NormalizedOutcome:
        root = _load(self.family, raw)
        results = root.xpath(".//*[local-name()='ResultadoDTE']")
        if not results:
            raise MalformedResponseError(self.family, "no ResultadoDTE entries", raw)

        documents = []
        for node in results:
            estado = _child_text(node, "EstadoDTE")
            if estado is None:
                raise MalformedResponseError(self.family, "ResultadoDTE without EstadoDTE", raw)
            state, message = self.lookup(estado, raw)
            folio = _int_or_none(_child_text(node, "Folio"))
            kind = _int_or_none(_child_text(node, "TipoDTE"))
            if folio is None or kind is None:
                raise MalformedResponseError(self.family, "ResultadoDTE without TipoDTE/Folio", raw)
            glosa = _child_text(node, "EstadoDTEGlosa")
            documents.append(
                NormalizedOutcome(
                    family=self.family,
                    state=state,
                    code=estado,
                    detail=f"{message}: {glosa}" if glosa else message,
                    document_kind=kind,
                    folio=folio,
                    issuer_rut=_child_text(node, "RUTEmisor"),
                )
            )

        states = {d.state for d in documents}
        if OutcomeState.REJECTED in states:
            overall = OutcomeState.REJECTED
        elif OutcomeState.ACCEPTED_WITH_DISCREPANCIES in states:
            overall = OutcomeState.ACCEPTED_WITH_DISCREPANCIES
        else:
            overall = OutcomeState.ACCEPTED
        return NormalizedOutcome(
            family=self.family,
            state=overall,
            code=documents[0].code if len(documents) == 1 else "*",
            detail=f"{len(documents)} document(s) answered",
            documents=tuple(documents),
        )


PARSERS: Mapping[str, ResponseParser] = MappingProxyType({
    UPLOAD: UploadAckParser(),
    BATCH_STATUS: BatchStatusParser(),
    DOCUMENT_DETAIL: DocumentDetailParser(),
    ACCEPTANCE_NOTICE: AcceptanceNoticeParser(),
})


def parse_response(family: str, raw: bytes | str) -> NormalizedOutcome:
    """Dispatch on the response family tag."""
    try:
        parser = PARSERS[family]
    except KeyError:
        raise ValueError(f"Unknown response family: {family}") from None
    return parser.parse(raw)
