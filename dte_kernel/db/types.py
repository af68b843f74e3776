"""
Module: dte_kernel.db.types
Responsibility: Amount helpers shared by the canonicalizer and value objects.
    Centralizes integer-unit rounding so that every total on the wire is
    computed the same way.
Architecture position: Kernel > DB.  May be imported by models/, domain/ and
    services/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Wire amounts are integer currency units; round_amount() is the ONLY
      sanctioned rounding function (half-up, away from zero on ties).
    - No floats: quantities and prices are Decimal until rounded.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

DEFAULT_ROUNDING = ROUND_HALF_UP


def to_decimal(value) -> Decimal:
    """
    Coerce int/str/Decimal to Decimal.

    Floats are accepted only through their string form, so 0.1 stays 0.1.

    Raises:
        ValueError: If value cannot be interpreted as a number.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Not a number: {value!r}") from exc


def round_amount(value: Decimal) -> int:
    """
    Round a Decimal to whole currency units, half-up.

    Example:
        round_amount(Decimal("1899.5")) -> 1900
    """
    return int(value.quantize(Decimal("1"), rounding=DEFAULT_ROUNDING))


def format_decimal(value: Decimal) -> str:
    """Render a Decimal without exponent or trailing zeros ("2", "1.5")."""
    if value == value.to_integral_value():
        return str(value.quantize(Decimal("1")))
    return format(value.normalize(), "f")
