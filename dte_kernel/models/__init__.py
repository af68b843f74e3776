"""ORM models. Importing this package registers every table on Base.metadata."""

from dte_kernel.models.authority_event import AuthorityEventLog, AuthorityEventType
from dte_kernel.models.folio import (
    FolioCounter,
    FolioRange,
    FolioStatus,
    IssuedFolio,
    RangeRetirement,
)
from dte_kernel.models.submission import SubmissionRecord

__all__ = [
    "AuthorityEventLog",
    "AuthorityEventType",
    "FolioCounter",
    "FolioRange",
    "FolioStatus",
    "IssuedFolio",
    "RangeRetirement",
    "SubmissionRecord",
]
