"""
DocumentCanonicalizer -- builds the canonical, signable DTE representation.

Responsibility:
    Validates a decided-to-issue document, computes its totals, and renders
    it as XML whose bytes depend only on the logical content.  Validation is
    split out (``validate``) so callers can reject doomed documents BEFORE a
    folio is consumed.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Uses lxml for
    element construction.

Invariants enforced:
    - totals.total == net + exempt + tax; tax = round_half_up(net * rate).
    - Canonical determinism: fixed element order, fixed attribute order, no
      insignificant whitespace, fixed encoding, no timestamps.  Same input
      -> byte-identical output.
    - The folio must lie inside the range active at canonicalization time.
    - Declared totals are accepted only if they equal the recomputed ones.

Failure modes:
    - InvalidDocumentError, TotalsMismatchError, UnknownDocumentKindError
      (ValidationError family).
    - OutOfRangeError when the folio is outside ``authorized_range``.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping

from lxml import etree

from dte_kernel.db.types import format_decimal, round_amount, to_decimal
from dte_kernel.domain.policies import DocumentPolicy
from dte_kernel.domain.values import (
    DocumentEnvelope,
    DocumentReference,
    LineItem,
    Party,
    Totals,
)
from dte_kernel.exceptions import (
    InvalidDocumentError,
    OutOfRangeError,
    TotalsMismatchError,
)
from dte_kernel.logging_config import get_logger

logger = get_logger("domain.canonicalizer")

CANONICAL_ENCODING = "ISO-8859-1"

# Text fields are truncated to the Authority's schema limits, with a warning,
# so that an over-long name never turns into a schema rejection after the
# folio is spent.
_LIMITS = {
    "RznSoc": 100,
    "GiroEmis": 80,
    "RznSocRecep": 100,
    "GiroRecep": 40,
    "DirOrigen": 70,
    "DirRecep": 70,
    "CmnaOrigen": 20,
    "CmnaRecep": 20,
    "CiudadOrigen": 20,
    "CiudadRecep": 20,
    "NmbItem": 80,
    "DscItem": 1000,
    "UnmdItem": 4,
    "RazonRef": 90,
}


def document_id_for(document_kind: int, folio: int) -> str:
    """Deterministic XML ID of a document: ``F<folio>T<kind>``."""
    return f"F{folio}T{document_kind}"


def compute_totals(line_items: Iterable[LineItem], tax_rate: Decimal) -> Totals:
    """
    Route each line to the net or exempt bucket and apply the tax rate.

    Example:
        [LineItem("A", 1, 10000), LineItem("B", 1, 5000, exempt=True)] at 0.19
        -> Totals(net=10000, exempt=5000, tax=1900, total=16900)
    """
    net = 0
    exempt = 0
    for item in line_items:
        if item.exempt:
            exempt += item.amount
        else:
            net += item.amount
    tax = round_amount(Decimal(net) * tax_rate)
    return Totals(net=net, exempt=exempt, tax=tax, total=net + exempt + tax, tax_rate=tax_rate)


def _coerce_line_item(item: LineItem | Mapping[str, Any]) -> LineItem:
    if isinstance(item, LineItem):
        return item
    if isinstance(item, Mapping):
        try:
            return LineItem(**item)
        except TypeError as exc:
            raise InvalidDocumentError(str(exc), field="line_items") from exc
    raise InvalidDocumentError(
        f"unsupported line item type {type(item).__name__}", field="line_items"
    )


def _declared_value(declared: Totals | Mapping[str, Any], name: str) -> Any:
    if isinstance(declared, Totals):
        return getattr(declared, name)
    return declared.get(name)


def _declared_amount(value: Any, name: str) -> Decimal:
    """Exact Decimal of a declared total; fractions are kept so they mismatch."""
    try:
        amount = to_decimal(value)
    except ValueError as exc:
        raise InvalidDocumentError(str(exc), field=name) from exc
    if not amount.is_finite():
        raise InvalidDocumentError(f"declared {name} is not a number", field=name)
    return amount


def _range_bounds(authorized_range: Any) -> tuple[int, int]:
    if isinstance(authorized_range, tuple):
        return authorized_range
    return authorized_range.range_start, authorized_range.range_end


class DocumentCanonicalizer:
    """
    Validates and renders tax documents.

    Contract:
        ``validate`` checks every structural precondition that does not need
        a folio.  ``canonicalize`` re-runs it, then builds the envelope.

    Guarantees:
        - Never allocates, signs, or performs I/O.
        - Output bytes are a pure function of the arguments.

    Usage:
        canonicalizer = DocumentCanonicalizer(config.documents)
        canonicalizer.validate("acct-1", 33, items, issuer, buyer)
        envelope = canonicalizer.canonicalize(
            "acct-1", 33, items, issuer, buyer, folio=100, issue_date=date.today()
        )
    """

    def __init__(self, policy: DocumentPolicy):
        self._policy = policy

    @property
    def policy(self) -> DocumentPolicy:
        return self._policy

    def validate(
        self,
        account_id: str,
        document_kind: int,
        line_items: Iterable[LineItem | Mapping[str, Any]],
        issuer: Party,
        counterparty: Party,
        references: Iterable[DocumentReference] = (),
        declared_totals: Totals | Mapping[str, Any] | None = None,
    ) -> Totals:
        """
        Check structural preconditions and return the computed totals.

        Raises:
            UnknownDocumentKindError, InvalidDocumentError, TotalsMismatchError
        """
        kind_def = self._policy.kind(document_kind)
        items = tuple(_coerce_line_item(i) for i in line_items)
        refs = tuple(references)

        if not items:
            raise InvalidDocumentError("at least one line item is required", field="line_items")
        if not isinstance(issuer, Party) or not isinstance(counterparty, Party):
            raise InvalidDocumentError("issuer and counterparty must be Party values")

        for index, item in enumerate(items, start=1):
            if not item.name or not item.name.strip():
                raise InvalidDocumentError(f"line {index} has no name", field="line_items")
            if item.quantity < 0:
                raise InvalidDocumentError(f"line {index} has a negative quantity", field="quantity")
            if item.unit_price < 0:
                raise InvalidDocumentError(f"line {index} has a negative price", field="unit_price")
            if kind_def.exempt_only and not item.exempt:
                raise InvalidDocumentError(
                    f"line {index} is taxable but kind {kind_def.code} is exempt-only",
                    field="exempt",
                )

        if kind_def.requires_reference and not refs:
            raise InvalidDocumentError(
                f"kind {kind_def.code} must reference the document it corrects",
                field="references",
            )

        totals = compute_totals(items, self._policy.tax_rate)
        if totals.total < 0:
            raise InvalidDocumentError("document total is negative", field="totals")

        if declared_totals is not None:
            for name in ("net", "exempt", "tax", "total"):
                declared = _declared_value(declared_totals, name)
                if declared is None:
                    continue
                amount = _declared_amount(declared, name)
                if amount != getattr(totals, name):
                    raise TotalsMismatchError(name, amount, getattr(totals, name))

        return totals

    def canonicalize(
        self,
        account_id: str,
        document_kind: int,
        line_items: Iterable[LineItem | Mapping[str, Any]],
        issuer: Party,
        counterparty: Party,
        folio: int,
        issue_date: date,
        references: Iterable[DocumentReference] = (),
        declared_totals: Totals | Mapping[str, Any] | None = None,
        authorized_range: Any = None,
    ) -> DocumentEnvelope:
        """
        Build the unsigned envelope.

        Args:
            authorized_range: ``(start, end)`` or an object with
                ``range_start``/``range_end``; when given, the folio must
                fall inside it.

        Raises:
            ValidationError subclasses, OutOfRangeError
        """
        items = tuple(_coerce_line_item(i) for i in line_items)
        refs = tuple(references)
        totals = self.validate(
            account_id, document_kind, items, issuer, counterparty, refs, declared_totals
        )

        if folio is None or int(folio) <= 0:
            raise InvalidDocumentError("folio must be a positive integer", field="folio")
        if authorized_range is not None:
            start, end = _range_bounds(authorized_range)
            if not start <= folio <= end:
                raise OutOfRangeError(account_id, document_kind, folio)

        document_id = document_id_for(document_kind, folio)
        root = self._build_tree(
            document_id, document_kind, folio, issue_date, issuer, counterparty, items, refs, totals
        )
        canonical = etree.tostring(root, encoding=CANONICAL_ENCODING, xml_declaration=True)

        logger.debug(
            "document_canonicalized",
            extra={
                "document_id": document_id,
                "document_kind": document_kind,
                "folio": folio,
                "total": totals.total,
                "line_count": len(items),
            },
        )

        return DocumentEnvelope(
            account_id=account_id,
            document_kind=int(document_kind),
            folio=int(folio),
            issue_date=issue_date,
            issuer=issuer,
            counterparty=counterparty,
            line_items=items,
            totals=totals,
            document_id=document_id,
            canonical_xml=canonical,
            references=refs,
        )

    # ------------------------------------------------------------------
    # XML construction
    # ------------------------------------------------------------------

    def _build_tree(
        self,
        document_id: str,
        document_kind: int,
        folio: int,
        issue_date: date,
        issuer: Party,
        counterparty: Party,
        items: tuple[LineItem, ...],
        refs: tuple[DocumentReference, ...],
        totals: Totals,
    ) -> etree._Element:
        ns = self._policy.namespace
        root = etree.Element(f"{{{ns}}}DTE", nsmap={None: ns})
        root.set("version", self._policy.schema_version)
        doc = _sub(root, ns, "Documento")
        doc.set("ID", document_id)

        header = _sub(doc, ns, "Encabezado")
        id_doc = _sub(header, ns, "IdDoc")
        _text(id_doc, ns, "TipoDTE", document_kind)
        _text(id_doc, ns, "Folio", folio)
        _text(id_doc, ns, "FchEmis", issue_date.isoformat())

        emisor = _sub(header, ns, "Emisor")
        _text(emisor, ns, "RUTEmisor", issuer.rut)
        _text(emisor, ns, "RznSoc", issuer.legal_name)
        _text(emisor, ns, "GiroEmis", issuer.business_activity)
        _text(emisor, ns, "Acteco", issuer.activity_code)
        _text(emisor, ns, "CdgSIISucur", issuer.branch_code)
        _text(emisor, ns, "DirOrigen", issuer.address)
        _text(emisor, ns, "CmnaOrigen", issuer.commune)
        _text(emisor, ns, "CiudadOrigen", issuer.city)

        receptor = _sub(header, ns, "Receptor")
        _text(receptor, ns, "RUTRecep", counterparty.rut)
        _text(receptor, ns, "RznSocRecep", counterparty.legal_name)
        _text(receptor, ns, "GiroRecep", counterparty.business_activity)
        _text(receptor, ns, "DirRecep", counterparty.address)
        _text(receptor, ns, "CmnaRecep", counterparty.commune)
        _text(receptor, ns, "CiudadRecep", counterparty.city)

        totales = _sub(header, ns, "Totales")
        if totals.net:
            _text(totales, ns, "MntNeto", totals.net)
        if totals.exempt:
            _text(totales, ns, "MntExe", totals.exempt)
        if totals.net:
            _text(totales, ns, "TasaIVA", format_decimal(totals.tax_rate * 100))
            _text(totales, ns, "IVA", totals.tax)
        _text(totales, ns, "MntTotal", totals.total)

        for number, item in enumerate(items, start=1):
            detalle = _sub(doc, ns, "Detalle")
            _text(detalle, ns, "NroLinDet", number)
            if item.exempt:
                _text(detalle, ns, "IndExe", 1)
            _text(detalle, ns, "NmbItem", item.name)
            _text(detalle, ns, "DscItem", item.description)
            _text(detalle, ns, "QtyItem", format_decimal(item.quantity))
            _text(detalle, ns, "UnmdItem", item.unit)
            _text(detalle, ns, "PrcItem", format_decimal(item.unit_price))
            _text(detalle, ns, "MontoItem", item.amount)

        for number, ref in enumerate(refs, start=1):
            referencia = _sub(doc, ns, "Referencia")
            _text(referencia, ns, "NroLinRef", number)
            _text(referencia, ns, "TpoDocRef", ref.document_kind)
            _text(referencia, ns, "FolioRef", ref.folio)
            _text(referencia, ns, "FchRef", ref.issue_date.isoformat())
            _text(referencia, ns, "CodRef", ref.reason_code)
            _text(referencia, ns, "RazonRef", ref.reason)

        return root


def _sub(parent: etree._Element, ns: str, tag: str) -> etree._Element:
    return etree.SubElement(parent, f"{{{ns}}}{tag}")


def _text(parent: etree._Element, ns: str, tag: str, value: Any) -> None:
    """Append ``<tag>value</tag>``; None and empty strings are omitted."""
    if value is None:
        return
    text = str(value).strip()
    if not text:
        return
    limit = _LIMITS.get(tag)
    if limit is not None and len(text) > limit:
        logger.warning(
            "field_truncated", extra={"field": tag, "limit": limit, "length": len(text)}
        )
        text = text[:limit]
    _sub(parent, ns, tag).text = text
