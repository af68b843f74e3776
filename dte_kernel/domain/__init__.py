"""Pure domain core: values, canonicalization, signing, response parsing."""

from dte_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from dte_kernel.domain.outcomes import TERMINAL_STATES, VALID_TRANSITIONS, OutcomeState
from dte_kernel.domain.values import (
    DocumentEnvelope,
    DocumentReference,
    LineItem,
    Party,
    Totals,
    normalize_rut,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "OutcomeState",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "DocumentEnvelope",
    "DocumentReference",
    "LineItem",
    "Party",
    "Totals",
    "normalize_rut",
]
