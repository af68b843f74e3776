"""
Transmitter -- batch assembly and upload with bounded retries.

Responsibility:
    Wraps signed documents in the EnvioDTE transmission envelope (cover
    sheet signed by the sender), uploads it with the account's session
    token, and interprets the synchronous upload acknowledgement.

Architecture position:
    Kernel > Services.  Called by dte_services.issuance_service OUTSIDE any
    database transaction: no folio lock is held while uploading.

Invariants enforced:
    - Embedded documents are copied unchanged; their signatures stay valid.
    - Transport failures are retried at most ``retry.attempts`` times in
      total with exponential backoff; the same payload bytes are re-sent.
    - A synchronous rejection is never retried.  Status 5 (authentication)
      also drops the cached session so the next attempt renegotiates.

Failure modes:
    - SubmissionFailedError: transport retries exhausted.
    - SubmissionRejectedError: upload acknowledged with a non-zero status.
    - SessionError subclasses from the negotiator.
    - ProtocolError: unreadable acknowledgement.  Logged with the raw reply
      and recorded as an ERROR event; never retried, since the Authority
      may have taken the upload.
"""

from __future__ import annotations

import hashlib
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Sequence

from lxml import etree

from dte_kernel.domain.accounts import AccountProfile
from dte_kernel.domain.authority_responses import UPLOAD, parse_response
from dte_kernel.domain.clock import Clock, SystemClock
from dte_kernel.domain.credentials import CredentialStore
from dte_kernel.domain.outcomes import OutcomeState
from dte_kernel.domain.policies import RetryPolicy
from dte_kernel.domain.signer import XmlSigner
from dte_kernel.domain.values import DocumentEnvelope
from dte_kernel.exceptions import (
    InvalidDocumentError,
    ProtocolError,
    SubmissionFailedError,
    SubmissionRejectedError,
    TransportError,
)
from dte_kernel.logging_config import get_logger
from dte_kernel.models.authority_event import AuthorityEventType
from dte_kernel.services.authority_client import AuthorityClient
from dte_kernel.services.authority_events import AuthorityEvent, EventSink, excerpt
from dte_kernel.services.session_negotiator import SessionNegotiator

logger = get_logger("services.transmitter")

DEFAULT_NAMESPACE = "http://www.sii.cl/SiiDte"
AUTHORITY_RUT = "60803000-K"
BATCH_ID = "SetDoc"
AUTHENTICATION_FAILURE = "5"

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)


@dataclass(frozen=True, slots=True)
class Transmission:
    """An accepted upload: the tracking id and what it took to get it."""

    tracking_id: str
    attempts: int
    fingerprint: str


@dataclass(frozen=True, slots=True)
class SignedDocument:
    """
    A signed document as stored after issuance.

    Stands in for a DocumentEnvelope when a stored document is re-sent.
    """

    account_id: str
    document_kind: int
    document_id: str
    signed_xml: bytes

    @property
    def is_signed(self) -> bool:
        return bool(self.signed_xml)


def fingerprint(xml: bytes) -> str:
    """SHA-256 hex digest of the exact bytes transmitted."""
    return hashlib.sha256(xml).hexdigest()


class Transmitter:
    """
    Uploads signed documents to the Authority.

    Contract:
        ``sleep`` and ``clock`` are injectable so retry timing is testable
        without waiting.

    Usage:
        transmitter = Transmitter(client, negotiator, credentials, signer)
        sent = transmitter.submit(signed_envelope, profile)
        sent.tracking_id
    """

    def __init__(
        self,
        client: AuthorityClient,
        negotiator: SessionNegotiator,
        credentials: CredentialStore,
        signer: XmlSigner,
        retry: RetryPolicy | None = None,
        authority_rut: str = AUTHORITY_RUT,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
        namespace: str = DEFAULT_NAMESPACE,
        event_sink: EventSink | None = None,
    ):
        self._client = client
        self._negotiator = negotiator
        self._credentials = credentials
        self._signer = signer
        self._retry = retry or RetryPolicy()
        self._authority_rut = authority_rut
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._namespace = namespace
        self._event_sink = event_sink

    fingerprint = staticmethod(fingerprint)

    # ------------------------------------------------------------------
    # Batch assembly
    # ------------------------------------------------------------------

    def build_batch(
        self,
        account: AccountProfile,
        envelopes: Sequence[DocumentEnvelope | SignedDocument],
    ) -> bytes:
        """
        Build and sign the EnvioDTE carrying ``envelopes``.

        Raises:
            InvalidDocumentError: Empty batch, unsigned document, or a
                document from another account.
            KeyMaterialMissingError, KeyMaterialExpiredError,
            SignatureFailureError
        """
        if not envelopes:
            raise InvalidDocumentError("batch has no documents")
        for envelope in envelopes:
            if not envelope.is_signed:
                raise InvalidDocumentError(
                    f"document {envelope.document_id} is not signed", field="signed_xml"
                )
            if envelope.account_id != account.account_id:
                raise InvalidDocumentError(
                    f"document {envelope.document_id} belongs to {envelope.account_id}",
                    field="account_id",
                )

        ns = self._namespace
        root = etree.Element(f"{{{ns}}}EnvioDTE", nsmap={None: ns})
        root.set("version", "1.0")
        set_dte = etree.SubElement(root, f"{{{ns}}}SetDTE")
        set_dte.set("ID", BATCH_ID)

        cover = etree.SubElement(set_dte, f"{{{ns}}}Caratula")
        cover.set("version", "1.0")
        for tag, value in (
            ("RutEmisor", account.rut),
            ("RutEnvia", account.sender_rut),
            ("RutReceptor", self._authority_rut),
            ("FchResol", account.resolution_date.isoformat()),
            ("NroResol", str(account.resolution_number)),
            ("TmstFirmaEnv", self._clock.now().strftime("%Y-%m-%dT%H:%M:%S")),
        ):
            etree.SubElement(cover, f"{{{ns}}}{tag}").text = value
        for kind, count in sorted(Counter(e.document_kind for e in envelopes).items()):
            subtotal = etree.SubElement(cover, f"{{{ns}}}SubTotDTE")
            etree.SubElement(subtotal, f"{{{ns}}}TpoDTE").text = str(kind)
            etree.SubElement(subtotal, f"{{{ns}}}NroDTE").text = str(count)

        for envelope in envelopes:
            set_dte.append(etree.fromstring(envelope.signed_xml, parser=_PARSER))

        payload = etree.tostring(
            root, encoding=self._signer.config.encoding, xml_declaration=True
        )
        material = self._credentials.get(account.account_id)
        material.check_valid_on(self._clock.today())
        return self._signer.sign_xml(payload, material, reference_id=BATCH_ID)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def submit(
        self,
        envelope_or_batch: DocumentEnvelope | SignedDocument | bytes,
        account: AccountProfile,
    ) -> Transmission:
        """Upload one signed document, or an already-built EnvioDTE."""
        if isinstance(envelope_or_batch, (DocumentEnvelope, SignedDocument)):
            payload = self.build_batch(account, [envelope_or_batch])
            label = envelope_or_batch.document_id
        else:
            payload = envelope_or_batch
            label = BATCH_ID
        return self.transmit(payload, account, label)

    def submit_batch(
        self,
        envelopes: Sequence[DocumentEnvelope | SignedDocument],
        account: AccountProfile,
    ) -> Transmission:
        return self.transmit(self.build_batch(account, envelopes), account, BATCH_ID)

    def transmit(self, payload: bytes, account: AccountProfile, label: str = BATCH_ID) -> Transmission:
        """
        Upload ``payload`` with bounded retries.

        Raises:
            SubmissionFailedError, SubmissionRejectedError, SessionError,
            ProtocolError
        """
        digest = fingerprint(payload)
        filename = f"{account.account_id}_{label}.xml"
        attempts = self._retry.attempts
        last_error: TransportError | None = None

        for attempt in range(1, attempts + 1):
            session = self._negotiator.get_session(account.account_id)
            started = time.monotonic()
            try:
                raw = self._client.upload(
                    payload, session.token, account.sender_rut, account.rut, filename
                )
            except TransportError as exc:
                last_error = exc
                self._emit(account, "transport_error", started, error=str(exc))
                logger.warning(
                    "upload_attempt_failed",
                    extra={
                        "account_id": account.account_id,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "fingerprint": digest,
                        "error": str(exc),
                    },
                )
                if attempt < attempts:
                    self._sleep(self._retry.delay_after(attempt))
                continue

            try:
                outcome = parse_response(UPLOAD, raw)
            except ProtocolError as exc:
                # The Authority may hold the upload; not retried.
                self._emit(account, exc.code, started, raw=raw, error=str(exc))
                logger.error(
                    "upload_reply_unreadable",
                    extra={
                        "account_id": account.account_id,
                        "attempt": attempt,
                        "fingerprint": digest,
                        "error_code": exc.code,
                        "raw": excerpt(raw),
                    },
                )
                raise
            self._emit(
                account, outcome.code, started, tracking_id=outcome.tracking_id, raw=raw
            )
            if outcome.state == OutcomeState.REJECTED:
                if outcome.code == AUTHENTICATION_FAILURE:
                    self._negotiator.invalidate(account.account_id)
                logger.warning(
                    "upload_rejected",
                    extra={
                        "account_id": account.account_id,
                        "authority_code": outcome.code,
                        "detail": outcome.detail,
                    },
                )
                raise SubmissionRejectedError(outcome.code, outcome.detail)

            logger.info(
                "upload_accepted",
                extra={
                    "account_id": account.account_id,
                    "tracking_id": outcome.tracking_id,
                    "attempts": attempt,
                    "fingerprint": digest,
                },
            )
            return Transmission(
                tracking_id=outcome.tracking_id, attempts=attempt, fingerprint=digest
            )

        logger.error(
            "upload_retries_exhausted",
            extra={"account_id": account.account_id, "attempts": attempts, "fingerprint": digest},
        )
        raise SubmissionFailedError(attempts, str(last_error))

    def _emit(
        self,
        account: AccountProfile,
        status: str,
        started: float,
        tracking_id: str | None = None,
        raw: bytes | None = None,
        error: str | None = None,
    ) -> None:
        if self._event_sink is None:
            return
        self._event_sink(
            AuthorityEvent(
                account_id=account.account_id,
                event_type=AuthorityEventType.ERROR if error else AuthorityEventType.UPLOAD,
                status=status,
                tracking_id=tracking_id,
                response=raw,
                error_message=error,
                response_time_ms=int((time.monotonic() - started) * 1000),
            )
        )
