"""Services for the issuance kernel (write side and Authority I/O)."""

from dte_kernel.services.authority_client import AuthorityClient
from dte_kernel.services.authority_events import AuthorityEvent, persist_event
from dte_kernel.services.folio_allocator import FolioAllocator, FolioGap, FolioStatusReport
from dte_kernel.services.session_negotiator import AuthoritySession, SessionNegotiator, SessionState
from dte_kernel.services.status_reconciler import StatusCheck, StatusReconciler, StatusResult
from dte_kernel.services.transmitter import SignedDocument, Transmission, Transmitter

__all__ = [
    "AuthorityClient",
    "AuthorityEvent",
    "AuthoritySession",
    "FolioAllocator",
    "FolioGap",
    "FolioStatusReport",
    "SessionNegotiator",
    "SessionState",
    "SignedDocument",
    "StatusCheck",
    "StatusReconciler",
    "StatusResult",
    "Transmission",
    "Transmitter",
    "persist_event",
]
