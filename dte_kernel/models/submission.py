"""
Module: dte_kernel.models.submission
Responsibility: ORM persistence for one transmitted document: its signed
    bytes, the Authority's tracking id, and the normalized outcome.
Architecture position: Kernel > Models.  May import from db/ and
    domain/outcomes.py only.

Invariants enforced:
    - One SubmissionRecord per document (unique document_id) and per issued
      folio (uq_submission_folio).
    - outcome_state moves only along domain.outcomes.VALID_TRANSITIONS
      (transition_to()).
    - signed_xml, fingerprint, folio, document_kind and account_id are
      immutable once written (db/immutability.py).
    - A batch shares one tracking_id across many records.

Failure modes:
    - IntegrityError on duplicate document_id or duplicate folio.
    - InvalidStateTransitionError on an illegal outcome change.
"""

from datetime import date, datetime

from sqlalchemy import BigInteger, Date, Index, Integer, LargeBinary, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dte_kernel.db.base import TimestampedBase
from dte_kernel.domain.outcomes import OutcomeState, is_terminal, validate_transition


class SubmissionRecord(TimestampedBase):
    """
    Submission state of one signed document.

    Counterparty fields record the receiver's commercial acceptance notice;
    they never change ``outcome_state``, which tracks the Authority only.
    """

    __tablename__ = "submission_records"

    __table_args__ = (
        UniqueConstraint("account_id", "document_kind", "folio", name="uq_submission_folio"),
        Index("idx_submission_tracking", "tracking_id"),
        Index("idx_submission_issuer_folio", "issuer_rut", "document_kind", "folio"),
        Index("idx_submission_state_checked", "outcome_state", "last_checked_at"),
    )

    document_id: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    # ID attribute of the signed Documento element ("F{folio}T{kind}")
    xml_id: Mapped[str] = mapped_column(String(40), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_kind: Mapped[int] = mapped_column(Integer, nullable=False)
    folio: Mapped[int] = mapped_column(BigInteger, nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    issuer_rut: Mapped[str] = mapped_column(String(12), nullable=False)
    counterparty_rut: Mapped[str] = mapped_column(String(12), nullable=False)

    signed_xml: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    tracking_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    outcome_state: Mapped[str] = mapped_column(String(40), nullable=False)
    authority_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    authority_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(nullable=True)

    counterparty_state: Mapped[str | None] = mapped_column(String(40), nullable=True)
    counterparty_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    counterparty_responded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def state(self) -> OutcomeState:
        return OutcomeState(self.outcome_state)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.outcome_state)

    def transition_to(self, target: OutcomeState) -> None:
        """
        Move to ``target`` after checking VALID_TRANSITIONS.

        Raises:
            InvalidStateTransitionError
        """
        validate_transition(self.document_id, self.outcome_state, target)
        self.outcome_state = OutcomeState(target).value
