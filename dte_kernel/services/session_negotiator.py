"""
SessionNegotiator -- seed/token handshake and per-account session cache.

Responsibility:
    Obtains an Authority session token for an account (request seed, sign
    it, exchange it for a token), caches it until it expires, and keeps the
    handshake single-flight per account.

Architecture position:
    Kernel > Services.  Uses AuthorityClient for the wire, XmlSigner and the
    CredentialStore for the seed signature.  Called by Transmitter and
    StatusReconciler before every authenticated request.

State machine (per account):
    NO_SESSION -> SEED_REQUESTED -> SEED_SIGNED -> TOKEN_ISSUED -> EXPIRED
    Any failure returns the account to NO_SESSION.

Invariants enforced:
    - At most one handshake in flight per account: concurrent callers wait
      on a per-account lock and reuse the token it produced.
    - A token is never handed out at or after ``expires_at``.
    - Each handshake step is retried exactly ``immediate_retries`` times
      (once by default) before failing.

Failure modes:
    - SeedUnavailableError, SigningFailedError, TokenRejectedError.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, TypeVar

from lxml import etree

from dte_kernel.domain.clock import Clock, SystemClock
from dte_kernel.domain.credentials import CredentialStore
from dte_kernel.domain.policies import SessionPolicy
from dte_kernel.domain.signer import XmlSigner
from dte_kernel.exceptions import (
    CredentialError,
    ProtocolError,
    SeedUnavailableError,
    SessionError,
    SigningFailedError,
    TokenRejectedError,
    TransportError,
)
from dte_kernel.logging_config import get_logger
from dte_kernel.models.authority_event import AuthorityEventType
from dte_kernel.services.authority_client import AuthorityClient
from dte_kernel.services.authority_events import AuthorityEvent, EventSink

logger = get_logger("services.session_negotiator")

T = TypeVar("T")

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)
STATUS_OK = "00"


class SessionState(str, Enum):
    NO_SESSION = "no_session"
    SEED_REQUESTED = "seed_requested"
    SEED_SIGNED = "seed_signed"
    TOKEN_ISSUED = "token_issued"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class AuthoritySession:
    account_id: str
    token: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


def _first(root: etree._Element, name: str) -> str | None:
    nodes = root.xpath(f"//*[local-name()='{name}']")
    if not nodes or nodes[0].text is None:
        return None
    return nodes[0].text.strip()


def parse_seed(raw: bytes) -> str:
    """
    Extract SEMILLA from a seed reply.

    Raises:
        ValueError: No seed, or a non-OK ESTADO.
    """
    root = etree.fromstring(raw, parser=_PARSER)
    status = _first(root, "ESTADO")
    if status is not None and status != STATUS_OK:
        raise ValueError(f"seed request refused with ESTADO {status}")
    seed = _first(root, "SEMILLA")
    if not seed:
        raise ValueError("reply carries no SEMILLA")
    return seed


def parse_token(raw: bytes) -> tuple[str | None, str | None, str | None]:
    """Return (token, ESTADO, GLOSA) from a token reply."""
    root = etree.fromstring(raw, parser=_PARSER)
    return _first(root, "TOKEN"), _first(root, "ESTADO"), _first(root, "GLOSA")


class SessionNegotiator:
    """
    Per-account Authority session cache with single-flight handshakes.

    Contract:
        get_session() returns a token valid at the time of return, performing
        the handshake only when no unexpired token is cached.

    Non-goals:
        - Does NOT refresh tokens proactively; a token is renewed on the
          first request after it expires, or after invalidate().

    Usage:
        negotiator = SessionNegotiator(client, credentials, XmlSigner())
        token = negotiator.get_session("acme").token
    """

    def __init__(
        self,
        client: AuthorityClient,
        credentials: CredentialStore,
        signer: XmlSigner,
        policy: SessionPolicy | None = None,
        clock: Clock | None = None,
        event_sink: EventSink | None = None,
    ):
        self._client = client
        self._credentials = credentials
        self._signer = signer
        self._policy = policy or SessionPolicy()
        self._clock = clock or SystemClock()
        self._event_sink = event_sink

        self._sessions: dict[str, AuthoritySession] = {}
        self._states: dict[str, SessionState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(account_id, threading.Lock())

    def _cached(self, account_id: str) -> AuthoritySession | None:
        session = self._sessions.get(account_id)
        if session is not None and not session.is_expired(self._clock.now_utc()):
            return session
        return None

    def state(self, account_id: str) -> SessionState:
        session = self._sessions.get(account_id)
        if session is not None and session.is_expired(self._clock.now_utc()):
            return SessionState.EXPIRED
        return self._states.get(account_id, SessionState.NO_SESSION)

    def invalidate(self, account_id: str) -> None:
        with self._lock_for(account_id):
            self._sessions.pop(account_id, None)
            self._states[account_id] = SessionState.NO_SESSION
        logger.info("session_invalidated", extra={"account_id": account_id})

    def get_session(self, account_id: str) -> AuthoritySession:
        """
        Return a valid session for ``account_id``, negotiating if needed.

        Raises:
            SeedUnavailableError, SigningFailedError, TokenRejectedError
        """
        session = self._cached(account_id)
        if session is not None:
            return session

        with self._lock_for(account_id):
            # Another thread may have finished the handshake while we waited
            session = self._cached(account_id)
            if session is not None:
                return session
            started = time.monotonic()
            try:
                session = self._negotiate(account_id)
            except SessionError as exc:
                self._states[account_id] = SessionState.NO_SESSION
                self._emit(account_id, exc.code, started, error=str(exc))
                raise
            self._sessions[account_id] = session
            self._states[account_id] = SessionState.TOKEN_ISSUED
            self._emit(account_id, "token_issued", started)
            return session

    def _negotiate(self, account_id: str) -> AuthoritySession:
        self._states[account_id] = SessionState.SEED_REQUESTED
        seed = self._step(account_id, "seed", lambda: self._request_seed(account_id))

        signed_seed = self._step(account_id, "sign", lambda: self._sign_seed(account_id, seed))
        self._states[account_id] = SessionState.SEED_SIGNED

        token = self._step(account_id, "token", lambda: self._request_token(account_id, signed_seed))

        issued_at = self._clock.now_utc()
        session = AuthoritySession(
            account_id=account_id,
            token=token,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=self._policy.token_ttl_seconds),
        )
        logger.info(
            "session_established",
            extra={"account_id": account_id, "expires_at": session.expires_at},
        )
        return session

    def _step(self, account_id: str, step: str, action: Callable[[], T]) -> T:
        for _ in range(self._policy.immediate_retries):
            try:
                return action()
            except SessionError as exc:
                logger.warning(
                    "session_step_retry",
                    extra={"account_id": account_id, "step": step, "error": str(exc)},
                )
        return action()

    def _request_seed(self, account_id: str) -> str:
        try:
            return parse_seed(self._client.fetch_seed())
        except (TransportError, ProtocolError) as exc:
            raise SeedUnavailableError(account_id, str(exc)) from exc
        except (etree.XMLSyntaxError, ValueError) as exc:
            raise SeedUnavailableError(account_id, f"unreadable seed reply: {exc}") from exc

    def _sign_seed(self, account_id: str, seed: str) -> bytes:
        try:
            material = self._credentials.get(account_id)
            material.check_valid_on(self._clock.today())
            return self._signer.sign_seed(seed, material)
        except CredentialError as exc:
            raise SigningFailedError(account_id, str(exc)) from exc

    def _request_token(self, account_id: str, signed_seed: bytes) -> str:
        try:
            raw = self._client.exchange_token(signed_seed)
        except (TransportError, ProtocolError) as exc:
            raise TokenRejectedError(account_id, str(exc)) from exc
        try:
            token, status, glosa = parse_token(raw)
        except etree.XMLSyntaxError as exc:
            raise TokenRejectedError(account_id, f"unreadable token reply: {exc}") from exc
        if status is not None and status != STATUS_OK:
            raise TokenRejectedError(account_id, glosa or "token refused", authority_status=status)
        if not token:
            raise TokenRejectedError(account_id, "reply carries no TOKEN", authority_status=status)
        return token

    def _emit(self, account_id: str, status: str, started: float, error: str | None = None) -> None:
        if self._event_sink is None:
            return
        self._event_sink(
            AuthorityEvent(
                account_id=account_id,
                event_type=AuthorityEventType.AUTHENTICATION,
                status=status,
                error_message=error,
                response_time_ms=int((time.monotonic() - started) * 1000),
            )
        )
