"""
Outcomes -- the normalized submission outcome state machine.

Responsibility:
    One outcome vocabulary for every Authority response family (upload
    acknowledgement, batch status, per-document detail, counterparty
    acceptance notice), and the legal transitions between states.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Used by models/submission.py for
    persistence and by domain/authority_responses.py as the parse target.

State machine:
    PENDING           -> SENT | REJECTED | SUBMISSION_FAILED
    SUBMISSION_FAILED -> SENT | REJECTED | SUBMISSION_FAILED
    SENT              -> SENT | ACCEPTED | ACCEPTED_WITH_DISCREPANCIES
                         | REJECTED | NOT_FOUND
    ACCEPTED, ACCEPTED_WITH_DISCREPANCIES, REJECTED, NOT_FOUND: terminal
"""

from enum import Enum

from dte_kernel.exceptions import InvalidStateTransitionError


class OutcomeState(str, Enum):
    """Normalized lifecycle state of one submitted document."""

    PENDING = "pending"                    # Signed and recorded, not yet uploaded
    SENT = "sent"                          # Upload acknowledged; Authority processing
    ACCEPTED = "accepted"
    ACCEPTED_WITH_DISCREPANCIES = "accepted_with_discrepancies"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"                # Authority has no record of the tracking id
    SUBMISSION_FAILED = "submission_failed"  # Transport retries exhausted; resubmittable


TERMINAL_STATES: frozenset[OutcomeState] = frozenset({
    OutcomeState.ACCEPTED,
    OutcomeState.ACCEPTED_WITH_DISCREPANCIES,
    OutcomeState.REJECTED,
    OutcomeState.NOT_FOUND,
})

VALID_TRANSITIONS: dict[OutcomeState, frozenset[OutcomeState]] = {
    OutcomeState.PENDING: frozenset({
        OutcomeState.SENT, OutcomeState.REJECTED, OutcomeState.SUBMISSION_FAILED,
    }),
    OutcomeState.SUBMISSION_FAILED: frozenset({
        OutcomeState.SENT, OutcomeState.REJECTED, OutcomeState.SUBMISSION_FAILED,
    }),
    OutcomeState.SENT: frozenset({
        OutcomeState.SENT,
        OutcomeState.ACCEPTED,
        OutcomeState.ACCEPTED_WITH_DISCREPANCIES,
        OutcomeState.REJECTED,
        OutcomeState.NOT_FOUND,
    }),
    # Terminal states -- no transitions allowed
    OutcomeState.ACCEPTED: frozenset(),
    OutcomeState.ACCEPTED_WITH_DISCREPANCIES: frozenset(),
    OutcomeState.REJECTED: frozenset(),
    OutcomeState.NOT_FOUND: frozenset(),
}


def is_terminal(state: OutcomeState | str) -> bool:
    return OutcomeState(state) in TERMINAL_STATES


def validate_transition(
    document_id: str, current: OutcomeState | str, target: OutcomeState | str
) -> None:
    """
    Raise if ``current -> target`` is not in VALID_TRANSITIONS.

    Raises:
        InvalidStateTransitionError
    """
    current_state = OutcomeState(current)
    target_state = OutcomeState(target)
    if target_state not in VALID_TRANSITIONS[current_state]:
        raise InvalidStateTransitionError(
            document_id, current_state.value, target_state.value
        )
