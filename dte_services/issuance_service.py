"""
dte_services.issuance_service -- inbound facade for document issuance.

Responsibility:
    The single entrypoint for issuing, re-sending, voiding and tracking tax
    documents.  Creates every kernel service once, wires them from the
    ``AuthorityConfig``, and owns every transaction boundary.

Architecture position:
    Services -- stateful orchestration over dte_kernel.  Callers are
    application code (web handlers, workers, the status poller).

Issuance pipeline:
    validate -> credentials (validity on the issue date)
    -> txn 1 [allocate folio -> canonicalize -> sign -> record PENDING]
    -> session token -> upload (retries)            # no transaction open
    -> txn 2 [record SENT / REJECTED / SUBMISSION_FAILED]
    An unreadable upload reply leaves the records PENDING.

Invariants enforced:
    - Validation and credential checks run before a folio is consumed.
    - No network I/O while the folio counter row is locked.
    - A consumed folio is never released automatically; failures are
      recorded and returned, and the document can be re-sent.

Failure modes:
    - ValidationError / CredentialError / RangeExhaustedError raise before
      anything is persisted.
    - Rejections and transport exhaustion do NOT raise: they are recorded
      and reported in the IssuanceResult.
    - An unreadable upload acknowledgement is reported with outcome PENDING
      and the protocol error code; the raw reply is in the event log.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Mapping, Sequence

import httpx
from sqlalchemy.orm import Session, sessionmaker

from dte_config.schema import AuthorityConfig
from dte_kernel.db.engine import session_scope
from dte_kernel.db.immutability import register_immutability_listeners
from dte_kernel.domain.accounts import AccountDirectory, AccountProfile, InMemoryAccountDirectory
from dte_kernel.domain.canonicalizer import DocumentCanonicalizer
from dte_kernel.domain.clock import Clock, SystemClock
from dte_kernel.domain.credentials import CredentialStore
from dte_kernel.domain.grant import parse_grant
from dte_kernel.domain.outcomes import OutcomeState
from dte_kernel.domain.signer import XmlSigner
from dte_kernel.domain.values import DocumentEnvelope, DocumentReference, LineItem, Party, Totals
from dte_kernel.exceptions import (
    CertificateHolderMismatchError,
    CredentialError,
    DteKernelError,
    InvalidDocumentError,
    InvalidGrantError,
    InvalidStateTransitionError,
    ProtocolError,
    SessionError,
    SignatureFailureError,
    SubmissionFailedError,
    SubmissionRejectedError,
    TransportError,
)
from dte_kernel.logging_config import LogContext, get_logger
from dte_kernel.models.authority_event import AuthorityEventType
from dte_kernel.models.folio import FolioRange, IssuedFolio
from dte_kernel.services.authority_client import AuthorityClient
from dte_kernel.services.authority_events import AuthorityEvent, persist_event
from dte_kernel.services.folio_allocator import FolioAllocator, FolioGap, FolioStatusReport
from dte_kernel.services.session_negotiator import SessionNegotiator
from dte_kernel.services.status_reconciler import StatusCheck, StatusReconciler, StatusResult
from dte_kernel.services.transmitter import SignedDocument, Transmission, Transmitter

logger = get_logger("services.issuance")

__all__ = [
    "AccountDirectory",
    "AccountProfile",
    "BatchIssuanceResult",
    "CredentialCheck",
    "FolioReport",
    "InMemoryAccountDirectory",
    "IssuanceRequest",
    "IssuanceResult",
    "IssuanceService",
]


@dataclass(frozen=True)
class IssuanceRequest:
    """One document of a batch."""

    document_kind: int
    line_items: Sequence[LineItem | Mapping[str, Any]]
    counterparty: Party
    issuer: Party | None = None
    issue_date: date | None = None
    references: Sequence[DocumentReference] = ()
    declared_totals: Totals | Mapping[str, Any] | None = None


@dataclass(frozen=True)
class IssuanceResult:
    document_id: str
    document_kind: int
    folio: int
    signed_xml: bytes
    tracking_id: str | None
    outcome: OutcomeState
    error_code: str | None = None
    detail: str | None = None
    totals: Totals | None = None


@dataclass(frozen=True)
class BatchIssuanceResult:
    tracking_id: str | None
    outcome: OutcomeState
    error_code: str | None
    detail: str | None
    documents: tuple[IssuanceResult, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class FolioReport:
    status: FolioStatusReport
    gaps: tuple[FolioGap, ...]


@dataclass(frozen=True)
class CredentialCheck:
    """Outcome of a signing-credential self-test."""

    account_id: str
    subject: str
    holder_rut: str | None
    not_valid_before: datetime
    not_valid_after: datetime
    checked_on: date


@dataclass(frozen=True)
class _Delivery:
    outcome: OutcomeState
    tracking_id: str | None
    error_code: str | None
    detail: str | None


class IssuanceService:
    """
    Composition root and transaction owner for issuance.

    Contract:
        Thread-safe: every operation opens its own sessions from
        ``session_factory``; the Authority client, negotiator and credential
        cache are shared across threads.

    Non-goals:
        - Does NOT render printable representations or tax books.
        - Does NOT release folios on failure; use void_folio().

    Usage:
        service = IssuanceService(
            session_factory=get_session_factory(),
            config=get_active_config("CL"),
            accounts=directory,
            credentials=FileCredentialStore("/etc/dte/keys"),
        )
        result = service.issue("acme", 33, items, issuer, customer)
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: AuthorityConfig,
        accounts: AccountDirectory,
        credentials: CredentialStore,
        client: AuthorityClient | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._accounts = accounts
        self._credentials = credentials
        self._clock = clock or SystemClock()

        register_immutability_listeners()

        # Singletons, in dependency order
        self.client = client or AuthorityClient(
            config.endpoints, timeout=config.timeout_seconds, transport=transport
        )
        self.canonicalizer = DocumentCanonicalizer(config.document_policy)
        self.signer = XmlSigner(config.signing)
        self.negotiator = SessionNegotiator(
            self.client,
            credentials,
            self.signer,
            policy=config.session,
            clock=self._clock,
            event_sink=self._record_event,
        )
        self.transmitter = Transmitter(
            self.client,
            self.negotiator,
            credentials,
            self.signer,
            retry=config.retry,
            authority_rut=config.authority_rut,
            clock=self._clock,
            sleep=sleep,
            namespace=config.document_policy.namespace,
            event_sink=self._record_event,
        )

    @property
    def config(self) -> AuthorityConfig:
        return self._config

    # ------------------------------------------------------------------
    # Wiring helpers
    # ------------------------------------------------------------------

    def _scope(self):
        return session_scope(self._session_factory)

    def _allocator(self, session: Session) -> FolioAllocator:
        return FolioAllocator(session, self._clock, self._config.folio)

    def _reconciler(self, session: Session) -> StatusReconciler:
        return StatusReconciler(session, self.client, self.negotiator, self._clock)

    def _record_event(self, event: AuthorityEvent) -> None:
        with self._scope() as session:
            persist_event(session, event, self._clock)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(
        self,
        account_id: str,
        document_kind: int,
        line_items: Sequence[LineItem | Mapping[str, Any]],
        issuer: Party | None,
        counterparty: Party,
        issue_date: date | None = None,
        references: Sequence[DocumentReference] = (),
        declared_totals: Totals | Mapping[str, Any] | None = None,
    ) -> IssuanceResult:
        """
        Validate, number, sign, record and submit one document.

        Raises:
            ValidationError, CredentialError, RangeExhaustedError
        """
        request = IssuanceRequest(
            document_kind=document_kind,
            line_items=line_items,
            counterparty=counterparty,
            issuer=issuer,
            issue_date=issue_date,
            references=tuple(references),
            declared_totals=declared_totals,
        )
        with LogContext.bind(
            correlation_id=uuid.uuid4().hex, account_id=account_id, document_kind=document_kind
        ):
            batch = self._issue(account_id, [request])
            return batch.documents[0]

    def issue_batch(
        self, account_id: str, requests: Sequence[IssuanceRequest]
    ) -> BatchIssuanceResult:
        """
        Issue several documents in one transmission envelope.

        All documents are validated before any folio is consumed; they share
        one tracking id and one upload outcome.
        """
        if not requests:
            raise InvalidDocumentError("batch has no documents")
        with LogContext.bind(correlation_id=uuid.uuid4().hex, account_id=account_id):
            return self._issue(account_id, list(requests))

    def _issue(self, account_id: str, requests: list[IssuanceRequest]) -> BatchIssuanceResult:
        profile = self._accounts.get(account_id)
        material = self._credentials.get(account_id)

        prepared = []
        for request in requests:
            issuer = request.issuer or Party(rut=profile.rut, legal_name=profile.legal_name)
            if issuer.rut != profile.rut:
                raise InvalidDocumentError(
                    f"issuer {issuer.rut} is not the account's RUT {profile.rut}", field="issuer"
                )
            day = request.issue_date or self._clock.today()
            totals = self.canonicalizer.validate(
                account_id,
                request.document_kind,
                request.line_items,
                issuer,
                request.counterparty,
                references=request.references,
                declared_totals=request.declared_totals,
            )
            material.check_valid_on(day)
            prepared.append((request, issuer, day, totals))

        signed: list[tuple[str, DocumentEnvelope]] = []
        with self._scope() as session:
            allocator = self._allocator(session)
            reconciler = self._reconciler(session)
            for request, issuer, day, _ in prepared:
                folio = allocator.allocate(account_id, request.document_kind)
                authorized = allocator.active_range(
                    account_id, request.document_kind, folio, include_exhausted=True
                )
                envelope = self.canonicalizer.canonicalize(
                    account_id,
                    request.document_kind,
                    request.line_items,
                    issuer,
                    request.counterparty,
                    folio,
                    day,
                    references=request.references,
                    declared_totals=request.declared_totals,
                    authorized_range=authorized,
                )
                envelope = self.signer.sign(envelope, material)
                document_id = str(uuid.uuid4())
                allocator.attach_document(account_id, request.document_kind, folio, document_id)
                reconciler.record_submission(envelope, document_id)
                signed.append((document_id, envelope))

        delivery = self._deliver(profile, [doc_id for doc_id, _ in signed], [e for _, e in signed])
        documents = tuple(
            IssuanceResult(
                document_id=document_id,
                document_kind=envelope.document_kind,
                folio=envelope.folio,
                signed_xml=envelope.signed_xml,
                tracking_id=delivery.tracking_id,
                outcome=delivery.outcome,
                error_code=delivery.error_code,
                detail=delivery.detail,
                totals=envelope.totals,
            )
            for document_id, envelope in signed
        )
        return BatchIssuanceResult(
            tracking_id=delivery.tracking_id,
            outcome=delivery.outcome,
            error_code=delivery.error_code,
            detail=delivery.detail,
            documents=documents,
        )

    def _deliver(
        self,
        profile: AccountProfile,
        document_ids: list[str],
        documents: Sequence[DocumentEnvelope | SignedDocument],
    ) -> _Delivery:
        """Upload outside any transaction, then record the outcome in txn 2."""
        sent: Transmission | None = None
        try:
            sent = self.transmitter.submit_batch(documents, profile)
        except SubmissionRejectedError as exc:
            with self._scope() as session:
                reconciler = self._reconciler(session)
                for document_id in document_ids:
                    reconciler.mark_rejected(document_id, exc.authority_code, exc.detail)
            return _Delivery(OutcomeState.REJECTED, None, exc.code, f"{exc.authority_code}: {exc.detail}")
        except SubmissionFailedError as exc:
            return self._record_failure(document_ids, exc, exc.attempts)
        except ProtocolError as exc:
            # Outcome unknown; the record stays PENDING.
            logger.error(
                "submission_outcome_unknown",
                extra={"document_ids": document_ids, "error_code": exc.code, "error": str(exc)},
            )
            return _Delivery(OutcomeState.PENDING, None, exc.code, str(exc))
        except (SessionError, CredentialError, TransportError) as exc:
            return self._record_failure(document_ids, exc, 0)

        with self._scope() as session:
            reconciler = self._reconciler(session)
            for document_id in document_ids:
                reconciler.mark_sent(document_id, sent.tracking_id, sent.attempts)
        return _Delivery(OutcomeState.SENT, sent.tracking_id, None, None)

    def _record_failure(
        self, document_ids: list[str], exc: DteKernelError, attempts: int
    ) -> _Delivery:
        logger.error(
            "submission_failed",
            extra={"document_ids": document_ids, "error_code": exc.code, "error": str(exc)},
        )
        with self._scope() as session:
            reconciler = self._reconciler(session)
            for document_id in document_ids:
                reconciler.mark_failed(document_id, str(exc), attempts)
        return _Delivery(OutcomeState.SUBMISSION_FAILED, None, exc.code, str(exc))

    def resubmit(self, document_id: str) -> IssuanceResult:
        """
        Re-send a stored document whose upload never succeeded.

        The same signed bytes are transmitted; no new folio is consumed.

        Raises:
            SubmissionNotFoundError, InvalidStateTransitionError
        """
        with LogContext.bind(correlation_id=uuid.uuid4().hex, document_id=document_id):
            with self._scope() as session:
                record = self._reconciler(session).get(document_id)
                state = OutcomeState(record.outcome_state)
                if state not in (OutcomeState.PENDING, OutcomeState.SUBMISSION_FAILED):
                    raise InvalidStateTransitionError(document_id, state.value, OutcomeState.SENT.value)
                document = SignedDocument(
                    account_id=record.account_id,
                    document_kind=record.document_kind,
                    document_id=record.xml_id,
                    signed_xml=record.signed_xml,
                )
                folio = record.folio

            profile = self._accounts.get(document.account_id)
            delivery = self._deliver(profile, [document_id], [document])
            return IssuanceResult(
                document_id=document_id,
                document_kind=document.document_kind,
                folio=folio,
                signed_xml=document.signed_xml,
                tracking_id=delivery.tracking_id,
                outcome=delivery.outcome,
                error_code=delivery.error_code,
                detail=delivery.detail,
            )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def verify_credentials(self, account_id: str, on: date | None = None) -> CredentialCheck:
        """
        Self-test an account's signing material without touching folios.

        Signs a token request the way the handshake does, verifies it against
        the stored certificate, checks that the certificate holder is the
        account's sender and that the certificate is valid on ``on`` (today
        by default).  Only the leaf certificate is checked; trusting its
        chain is the Authority's decision.

        Raises:
            UnknownAccountError, KeyMaterialMissingError,
            KeyMaterialExpiredError, SignatureFailureError,
            CertificateHolderMismatchError
        """
        day = on or self._clock.today()
        with LogContext.bind(account_id=account_id):
            profile = self._accounts.get(account_id)
            material = self._credentials.get(account_id)

            sample = self.signer.sign_seed("000000000000", material)
            if not self.signer.verify(sample, material.certificate):
                raise SignatureFailureError("signature made with the stored key does not verify")

            holder = material.subject_rut
            if holder is None:
                logger.warning("certificate_holder_unknown", extra={"subject": material.subject})
            elif holder != profile.sender_rut:
                raise CertificateHolderMismatchError(account_id, profile.sender_rut, holder)

            material.check_valid_on(day)
            logger.info(
                "credentials_verified",
                extra={
                    "subject": material.subject,
                    "not_valid_after": material.not_valid_after,
                    "chain_length": len(material.chain),
                },
            )
            return CredentialCheck(
                account_id=account_id,
                subject=material.subject,
                holder_rut=holder,
                not_valid_before=material.not_valid_before,
                not_valid_after=material.not_valid_after,
                checked_on=day,
            )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def check_status(self, document_id: str, force: bool = False) -> StatusResult:
        """
        Current outcome, querying the Authority outside any transaction.

        Raises:
            SubmissionNotFoundError, TransportError, SessionError, ProtocolError
        """
        with LogContext.bind(document_id=document_id):
            with self._scope() as session:
                reconciler = self._reconciler(session)
                check = reconciler.plan_check(document_id, force=force)
            if isinstance(check, StatusResult):
                return check
            return self._run_check(reconciler, check)

    def _run_check(self, reconciler: StatusReconciler, check: StatusCheck) -> StatusResult:
        try:
            reply = reconciler.fetch_status(check)
        except (TransportError, SessionError) as exc:
            self._record_event(
                AuthorityEvent(
                    account_id=check.account_id,
                    event_type=AuthorityEventType.ERROR,
                    status=exc.code,
                    document_id=check.document_id,
                    tracking_id=check.tracking_id,
                    error_message=str(exc),
                )
            )
            raise
        with self._scope() as session:
            return self._reconciler(session).apply_status(check, reply)

    def poll_pending(self) -> list[StatusResult]:
        """
        Check every document still awaiting a final outcome.

        One tracking id is queried once per run; a failure for one document
        is logged and does not stop the others.
        """
        polling = self._config.polling
        older_than = self._clock.now_utc() - timedelta(seconds=polling.min_recheck_seconds)
        with self._scope() as session:
            document_ids = self._reconciler(session).pending_checks(
                older_than=older_than, limit=polling.batch_limit
            )

        results: list[StatusResult] = []
        seen_tracking: set[str] = set()
        for document_id in document_ids:
            try:
                with self._scope() as session:
                    reconciler = self._reconciler(session)
                    check = reconciler.plan_check(document_id)
                if isinstance(check, StatusResult):
                    continue
                if check.tracking_id in seen_tracking:
                    continue
                seen_tracking.add(check.tracking_id)
                results.append(self._run_check(reconciler, check))
            except DteKernelError as exc:
                logger.warning(
                    "status_poll_failed",
                    extra={"document_id": document_id, "error_code": exc.code, "error": str(exc)},
                )
        logger.info(
            "status_poll_completed",
            extra={"candidates": len(document_ids), "checked": len(results)},
        )
        return results

    def receive_acceptance_notice(self, xml: bytes | str) -> list[StatusResult]:
        """Store a counterparty's commercial response on the matching documents."""
        with self._scope() as session:
            return self._reconciler(session).apply_acceptance_notice(xml)

    # ------------------------------------------------------------------
    # Folios
    # ------------------------------------------------------------------

    def void_folio(
        self, account_id: str, document_kind: int, folio: int, reason: str
    ) -> IssuedFolio:
        with self._scope() as session:
            return self._allocator(session).release(account_id, document_kind, folio, reason)

    def reserve_folio(self, account_id: str, document_kind: int, folio: int) -> IssuedFolio:
        with self._scope() as session:
            return self._allocator(session).reserve(account_id, document_kind, folio)

    def grant_folio_range(
        self,
        account_id: str,
        document_kind: int,
        range_start: int,
        range_end: int,
        grant_proof: str | bytes = "",
        supersede: bool = False,
    ) -> FolioRange:
        """
        Ingest an authorized folio range.

        A supplied grant proof must name the same kind, range and the
        account's RUT.

        Raises:
            InvalidGrantError, InvalidFolioRangeError, RangeOverlapError,
            RangeBelowCounterError, UnknownAccountError
        """
        self.canonicalizer.policy.kind(document_kind)
        grant_xml = ""
        if grant_proof:
            profile = self._accounts.get(account_id)
            grant = parse_grant(grant_proof)
            mismatches = [
                name
                for name, expected, actual in (
                    ("issuer RUT", profile.rut, grant.issuer_rut),
                    ("document kind", document_kind, grant.document_kind),
                    ("range start", range_start, grant.range_start),
                    ("range end", range_end, grant.range_end),
                )
                if expected != actual
            ]
            if mismatches:
                raise InvalidGrantError(f"grant proof does not match: {', '.join(mismatches)}")
            grant_xml = (
                grant_proof.decode("ISO-8859-1") if isinstance(grant_proof, bytes) else grant_proof
            )

        with self._scope() as session:
            return self._allocator(session).grant_range(
                account_id,
                document_kind,
                range_start,
                range_end,
                grant_xml=grant_xml,
                supersede=supersede,
            )

    def folio_status(self, account_id: str, document_kind: int) -> FolioStatusReport:
        with self._scope() as session:
            return self._allocator(session).folio_status(account_id, document_kind)

    def folio_report(
        self,
        account_id: str,
        document_kind: int,
        issued_from: datetime | None = None,
        issued_to: datetime | None = None,
    ) -> FolioReport:
        with self._scope() as session:
            allocator = self._allocator(session)
            return FolioReport(
                status=allocator.folio_status(account_id, document_kind),
                gaps=tuple(allocator.gap_report(account_id, document_kind, issued_from, issued_to)),
            )

    def close(self) -> None:
        self.client.close()
