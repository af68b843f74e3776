"""
Values -- Immutable, self-validating document value objects.

Responsibility:
    Provides the value types a tax document is built from: tax ids (RUT),
    parties, line items, correction references, totals, and the
    DocumentEnvelope that carries canonical and signed XML through the
    issuance pipeline.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - RUTs are normalized ("12345678-5") and carry a valid mod-11 check digit.
    - Quantities and prices are Decimal, never float.
    - Totals.total == net + exempt + tax, all integer currency units.
    - A DocumentEnvelope is immutable; signing produces a new envelope.

Failure modes:
    - InvalidRutError on a malformed tax id.
    - InvalidDocumentError on non-numeric or inconsistent values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal

from dte_kernel.db.types import round_amount, to_decimal
from dte_kernel.exceptions import InvalidDocumentError, InvalidRutError

_RUT_PATTERN = re.compile(r"^(\d{1,8})-([\dK])$")


def rut_check_digit(body: int) -> str:
    """Mod-11 check digit for the numeric part of a RUT."""
    total = 0
    factor = 2
    for digit in reversed(str(body)):
        total += int(digit) * factor
        factor = 2 if factor == 7 else factor + 1
    remainder = 11 - (total % 11)
    if remainder == 11:
        return "0"
    if remainder == 10:
        return "K"
    return str(remainder)


def normalize_rut(rut: str) -> str:
    """
    Validate and normalize a RUT to ``<digits>-<dv>`` without dots.

    Raises:
        InvalidRutError: If the format or check digit is wrong.
    """
    if not isinstance(rut, str):
        raise InvalidRutError(str(rut))
    cleaned = rut.replace(".", "").replace(" ", "").upper()
    if "-" not in cleaned and len(cleaned) >= 2:
        cleaned = f"{cleaned[:-1]}-{cleaned[-1]}"
    match = _RUT_PATTERN.match(cleaned)
    if match is None:
        raise InvalidRutError(rut)
    body, dv = match.groups()
    if rut_check_digit(int(body)) != dv:
        raise InvalidRutError(rut)
    return f"{int(body)}-{dv}"


def is_valid_rut(rut: str) -> bool:
    try:
        normalize_rut(rut)
    except InvalidRutError:
        return False
    return True


@dataclass(frozen=True, slots=True)
class Party:
    """
    Issuer or counterparty of a document.

    ``activity_code`` (Acteco) and ``branch_code`` are only emitted for the
    issuer.
    """

    rut: str
    legal_name: str
    business_activity: str = ""
    address: str = ""
    commune: str = ""
    city: str = ""
    activity_code: int | None = None
    branch_code: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rut", normalize_rut(self.rut))
        if not self.legal_name or not self.legal_name.strip():
            raise InvalidDocumentError("party legal name is required", field="legal_name")


@dataclass(frozen=True, slots=True)
class LineItem:
    """
    One detail line.

    Contract:
        ``amount`` is quantity x unit_price rounded half-up to whole units.
        ``exempt`` routes the amount to the exempt bucket instead of net.
    """

    name: str
    quantity: Decimal
    unit_price: Decimal
    exempt: bool = False
    description: str | None = None
    unit: str | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "quantity", to_decimal(self.quantity))
            object.__setattr__(self, "unit_price", to_decimal(self.unit_price))
        except ValueError as exc:
            raise InvalidDocumentError(str(exc), field="line_items") from exc

    @property
    def amount(self) -> int:
        return round_amount(self.quantity * self.unit_price)


@dataclass(frozen=True, slots=True)
class DocumentReference:
    """
    Reference to an earlier document, required by credit and debit notes.

    reason_code: 1 = voids the referenced document, 2 = corrects text,
    3 = corrects amounts.
    """

    document_kind: int
    folio: int
    issue_date: date
    reason_code: int | None = None
    reason: str = ""


@dataclass(frozen=True, slots=True)
class Totals:
    """Document totals in integer currency units."""

    net: int
    exempt: int
    tax: int
    total: int
    tax_rate: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        if self.total != self.net + self.exempt + self.tax:
            raise InvalidDocumentError(
                f"total {self.total} != net {self.net} + exempt {self.exempt} "
                f"+ tax {self.tax}",
                field="totals",
            )


@dataclass(frozen=True, slots=True)
class DocumentEnvelope:
    """
    A numbered, canonicalized tax document.

    Contract:
        Created unsigned by the canonicalizer; ``with_signature`` returns the
        signed copy.  Never edited in place -- a correction is a new document
        referencing this one.
    """

    account_id: str
    document_kind: int
    folio: int
    issue_date: date
    issuer: Party
    counterparty: Party
    line_items: tuple[LineItem, ...]
    totals: Totals
    document_id: str
    canonical_xml: bytes
    references: tuple[DocumentReference, ...] = field(default_factory=tuple)
    signed_xml: bytes | None = None

    @property
    def is_signed(self) -> bool:
        return self.signed_xml is not None

    def with_signature(self, signed_xml: bytes) -> DocumentEnvelope:
        return replace(self, signed_xml=signed_xml)
