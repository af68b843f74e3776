"""
Typed Exception Hierarchy for the DTE Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Issuance failures must be actionable by the business layer: "certificate
expired" and "range exhausted - request new folios" need different operator
responses.  Parsing message strings for that is fragile, so:
  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA, including the raw Authority detail
     message where one exists

Example:
    try:
        result = service.issue(...)
    except RangeExhaustedError as e:
        request_new_grant(e.account_id, e.document_kind)
    except KeyMaterialExpiredError as e:
        notify_operator(code=e.code, expired_on=e.not_valid_after)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    DteKernelError (base)
    |
    +-- ValidationError                 not retried; caller corrects input
    |   +-- InvalidDocumentError
    |   +-- TotalsMismatchError
    |   +-- UnknownDocumentKindError
    |   +-- InvalidRutError
    |   +-- InvalidFolioRangeError
    |   +-- InvalidGrantError
    |   +-- UnknownAccountError
    |   +-- FolioNotIssuedError
    |   +-- SubmissionNotFoundError
    |
    +-- ResourceExhaustionError         not retried; needs a new grant
    |   +-- RangeExhaustedError
    |
    +-- FolioRangeError
    |   +-- OutOfRangeError
    |   +-- RangeOverlapError
    |   +-- RangeBelowCounterError
    |
    +-- ConcurrencyConflictError        not retried; request a fresh folio
    |   +-- FolioInUseError
    |
    +-- CredentialError                 not retried; operator action
    |   +-- KeyMaterialMissingError
    |   +-- KeyMaterialExpiredError
    |   +-- SignatureFailureError
    |   +-- CertificateHolderMismatchError
    |
    +-- SessionError                    one immediate retry, then surfaced
    |   +-- SeedUnavailableError
    |   +-- SigningFailedError
    |   +-- TokenRejectedError
    |
    +-- TransportError                  bounded retry with backoff
    |   +-- AuthorityUnavailableError
    |   +-- SubmissionFailedError
    |
    +-- ProtocolError                   logged with raw payload, surfaced
    |   +-- UnrecognizedResponseCodeError
    |   +-- MalformedResponseError
    |
    +-- SubmissionRejectedError
    +-- InvalidStateTransitionError
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | INVALID_DOCUMENT            | Empty items, negative qty/price, ...
                | TOTALS_MISMATCH             | Declared totals != recomputed totals
                | UNKNOWN_DOCUMENT_KIND       | Kind not in jurisdiction config
                | INVALID_RUT                 | Tax id fails check digit
                | INVALID_FOLIO_RANGE         | range_start > range_end, or <= 0
                | INVALID_GRANT               | Grant proof unreadable or mismatched
                | UNKNOWN_ACCOUNT             | No profile for account id
                | FOLIO_NOT_ISSUED            | Void of a folio never issued
                | SUBMISSION_NOT_FOUND        | Unknown document id
----------------|-----------------------------|-----------------------------------------
Exhaustion      | RANGE_EXHAUSTED             | No open range holds the next folio
----------------|-----------------------------|-----------------------------------------
Folio range     | OUT_OF_RANGE                | Folio outside every open range
                | RANGE_OVERLAP               | New grant overlaps an open range
                | RANGE_BELOW_COUNTER         | Grant would orphan issued folios
----------------|-----------------------------|-----------------------------------------
Concurrency     | FOLIO_IN_USE                | reserve() of an issued/reserved folio
----------------|-----------------------------|-----------------------------------------
Credential      | KEY_MATERIAL_MISSING        | No key/certificate for account
                | KEY_MATERIAL_EXPIRED        | Certificate invalid on issue date
                | SIGNATURE_FAILURE           | Crypto backend failed to sign
                | CERTIFICATE_HOLDER_MISMATCH | Certificate RUT is not the sender's
----------------|-----------------------------|-----------------------------------------
Session         | SEED_UNAVAILABLE            | Seed endpoint failed twice
                | SIGNING_FAILED              | Could not sign the seed envelope
                | TOKEN_REJECTED              | Authority refused the signed seed
----------------|-----------------------------|-----------------------------------------
Transport       | AUTHORITY_UNAVAILABLE       | Timeout, connection error, 5xx
                | SUBMISSION_FAILED           | Upload retries exhausted
----------------|-----------------------------|-----------------------------------------
Protocol        | UNRECOGNIZED_RESPONSE_CODE  | Code missing from the family table
                | MALFORMED_RESPONSE          | Unparseable / incomplete response
----------------|-----------------------------|-----------------------------------------
Submission      | SUBMISSION_REJECTED         | Synchronous non-zero upload status
State           | INVALID_OUTCOME_TRANSITION  | Illegal outcome state change
Immutability    | IMMUTABILITY_VIOLATION      | Edit of signed/issued record
"""


class DteKernelError(Exception):
    """
    Base exception for all DTE kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "DTE_KERNEL_ERROR"


# Validation


class ValidationError(DteKernelError):
    """Base exception for malformed input."""

    code: str = "VALIDATION_ERROR"


class InvalidDocumentError(ValidationError):
    """Document fails a structural precondition."""

    code: str = "INVALID_DOCUMENT"

    def __init__(self, reason: str, field: str | None = None):
        self.reason = reason
        self.field = field
        where = f" ({field})" if field else ""
        super().__init__(f"Invalid document{where}: {reason}")


class TotalsMismatchError(ValidationError):
    """Caller-supplied totals disagree with the recomputed totals."""

    code: str = "TOTALS_MISMATCH"

    def __init__(self, field: str, declared, computed: int):
        self.field = field
        self.declared = declared
        self.computed = computed
        super().__init__(
            f"Declared {field}={declared} does not match computed {computed}"
        )


class UnknownDocumentKindError(ValidationError):
    """Document kind is not configured for the jurisdiction."""

    code: str = "UNKNOWN_DOCUMENT_KIND"

    def __init__(self, document_kind: int):
        self.document_kind = document_kind
        super().__init__(f"Unknown document kind: {document_kind}")


class InvalidRutError(ValidationError):
    """Tax identifier is malformed or fails its check digit."""

    code: str = "INVALID_RUT"

    def __init__(self, rut: str):
        self.rut = rut
        super().__init__(f"Invalid RUT: {rut!r}")


class InvalidFolioRangeError(ValidationError):
    """Range bounds are not a valid interval."""

    code: str = "INVALID_FOLIO_RANGE"

    def __init__(self, range_start: int, range_end: int, reason: str):
        self.range_start = range_start
        self.range_end = range_end
        self.reason = reason
        super().__init__(f"Invalid folio range [{range_start}, {range_end}]: {reason}")


class InvalidGrantError(ValidationError):
    """Grant proof cannot be parsed or does not match the requested range."""

    code: str = "INVALID_GRANT"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid folio grant: {reason}")


class UnknownAccountError(ValidationError):
    """No issuing profile is registered for the account."""

    code: str = "UNKNOWN_ACCOUNT"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Unknown account: {account_id}")


class FolioNotIssuedError(ValidationError):
    """Folio was never issued or reserved, so it cannot be voided."""

    code: str = "FOLIO_NOT_ISSUED"

    def __init__(self, account_id: str, document_kind: int, folio: int):
        self.account_id = account_id
        self.document_kind = document_kind
        self.folio = folio
        super().__init__(
            f"Folio {folio} (kind {document_kind}) was never issued for {account_id}"
        )


class SubmissionNotFoundError(ValidationError):
    """No submission record exists for the document id."""

    code: str = "SUBMISSION_NOT_FOUND"

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Submission not found: {document_id}")


# Resource exhaustion


class ResourceExhaustionError(DteKernelError):
    """Base exception for exhausted authority-granted capacity."""

    code: str = "RESOURCE_EXHAUSTION"


class RangeExhaustedError(ResourceExhaustionError):
    """No open range contains the next folio."""

    code: str = "RANGE_EXHAUSTED"

    def __init__(self, account_id: str, document_kind: int, current_value: int):
        self.account_id = account_id
        self.document_kind = document_kind
        self.current_value = current_value
        super().__init__(
            f"Folio range exhausted for {account_id} kind {document_kind} "
            f"(last issued {current_value}) - request new folios"
        )


# Folio ranges


class FolioRangeError(DteKernelError):
    """Base exception for folio/range containment errors."""

    code: str = "FOLIO_RANGE_ERROR"


class OutOfRangeError(FolioRangeError):
    """Folio lies outside every open range for the key."""

    code: str = "OUT_OF_RANGE"

    def __init__(self, account_id: str, document_kind: int, folio: int):
        self.account_id = account_id
        self.document_kind = document_kind
        self.folio = folio
        super().__init__(
            f"Folio {folio} is outside the authorized ranges for "
            f"{account_id} kind {document_kind}"
        )


class RangeOverlapError(FolioRangeError):
    """A new range overlaps a still-open range of the same key."""

    code: str = "RANGE_OVERLAP"

    def __init__(
        self,
        account_id: str,
        document_kind: int,
        range_start: int,
        range_end: int,
        existing_start: int,
        existing_end: int,
    ):
        self.account_id = account_id
        self.document_kind = document_kind
        self.range_start = range_start
        self.range_end = range_end
        self.existing_start = existing_start
        self.existing_end = existing_end
        super().__init__(
            f"Range [{range_start}, {range_end}] overlaps open range "
            f"[{existing_start}, {existing_end}]"
        )


class RangeBelowCounterError(FolioRangeError):
    """A new range ends at or below folios already issued."""

    code: str = "RANGE_BELOW_COUNTER"

    def __init__(
        self, account_id: str, document_kind: int, range_end: int, current_value: int
    ):
        self.account_id = account_id
        self.document_kind = document_kind
        self.range_end = range_end
        self.current_value = current_value
        super().__init__(
            f"Range ending at {range_end} would orphan issued folios "
            f"(counter at {current_value})"
        )


# Concurrency


class ConcurrencyConflictError(DteKernelError):
    """Base exception for conflicting claims on a shared resource."""

    code: str = "CONCURRENCY_CONFLICT"


class FolioInUseError(ConcurrencyConflictError):
    """Folio was already issued or reserved."""

    code: str = "FOLIO_IN_USE"

    def __init__(self, account_id: str, document_kind: int, folio: int):
        self.account_id = account_id
        self.document_kind = document_kind
        self.folio = folio
        super().__init__(f"Folio {folio} (kind {document_kind}) is already in use")


# Credentials


class CredentialError(DteKernelError):
    """Base exception for signing material problems."""

    code: str = "CREDENTIAL_ERROR"


class KeyMaterialMissingError(CredentialError):
    """No key or certificate is available for the account."""

    code: str = "KEY_MATERIAL_MISSING"

    def __init__(self, account_id: str, reason: str = "not found"):
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Key material missing for {account_id}: {reason}")


class KeyMaterialExpiredError(CredentialError):
    """Certificate validity window does not cover the checked date."""

    code: str = "KEY_MATERIAL_EXPIRED"

    def __init__(self, subject: str, not_valid_before, not_valid_after, checked_on):
        self.subject = subject
        self.not_valid_before = not_valid_before
        self.not_valid_after = not_valid_after
        self.checked_on = checked_on
        super().__init__(
            f"Certificate {subject} is not valid on {checked_on} "
            f"(valid {not_valid_before} to {not_valid_after})"
        )


class SignatureFailureError(CredentialError):
    """The signing primitive failed."""

    code: str = "SIGNATURE_FAILURE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Signature failure: {reason}")


class CertificateHolderMismatchError(CredentialError):
    """The certificate names a different person than the account's sender."""

    code: str = "CERTIFICATE_HOLDER_MISMATCH"

    def __init__(self, account_id: str, expected_rut: str, certificate_rut: str):
        self.account_id = account_id
        self.expected_rut = expected_rut
        self.certificate_rut = certificate_rut
        super().__init__(
            f"Certificate for {account_id} belongs to {certificate_rut}, "
            f"not the sender {expected_rut}"
        )


# Session negotiation


class SessionError(DteKernelError):
    """Base exception for the seed/sign/token handshake."""

    code: str = "SESSION_ERROR"


class SeedUnavailableError(SessionError):
    """The Authority did not hand out a seed."""

    code: str = "SEED_UNAVAILABLE"

    def __init__(self, account_id: str, reason: str):
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Seed unavailable for {account_id}: {reason}")


class SigningFailedError(SessionError):
    """The seed envelope could not be signed."""

    code: str = "SIGNING_FAILED"

    def __init__(self, account_id: str, reason: str):
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Seed signing failed for {account_id}: {reason}")


class TokenRejectedError(SessionError):
    """The Authority refused to exchange the signed seed for a token."""

    code: str = "TOKEN_REJECTED"

    def __init__(self, account_id: str, reason: str, authority_status: str | None = None):
        self.account_id = account_id
        self.reason = reason
        self.authority_status = authority_status
        super().__init__(f"Token rejected for {account_id}: {reason}")


# Transport


class TransportError(DteKernelError):
    """Base exception for retryable network failures."""

    code: str = "TRANSPORT_ERROR"


class AuthorityUnavailableError(TransportError):
    """Timeout, connection failure or 5xx from the Authority."""

    code: str = "AUTHORITY_UNAVAILABLE"

    def __init__(self, endpoint: str, reason: str, status_code: int | None = None):
        self.endpoint = endpoint
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Authority unavailable at {endpoint}: {reason}")


class SubmissionFailedError(TransportError):
    """Upload retries were exhausted."""

    code: str = "SUBMISSION_FAILED"

    def __init__(self, attempts: int, reason: str):
        self.attempts = attempts
        self.reason = reason
        super().__init__(f"Submission failed after {attempts} attempt(s): {reason}")


# Protocol


class ProtocolError(DteKernelError):
    """Authority returned something the kernel cannot interpret."""

    code: str = "PROTOCOL_ERROR"

    def __init__(self, family: str, reason: str, raw: str | bytes | None = None):
        self.family = family
        self.reason = reason
        self.raw = raw
        super().__init__(f"Protocol error in {family} response: {reason}")


class UnrecognizedResponseCodeError(ProtocolError):
    """Response code is missing from the family's code table."""

    code: str = "UNRECOGNIZED_RESPONSE_CODE"

    def __init__(self, family: str, response_code: str, raw: str | bytes | None = None):
        self.response_code = response_code
        super().__init__(family, f"unrecognized code {response_code!r}", raw)


class MalformedResponseError(ProtocolError):
    """Response is not parseable or lacks required elements."""

    code: str = "MALFORMED_RESPONSE"


# Submission / state


class SubmissionRejectedError(DteKernelError):
    """Authority synchronously rejected an upload."""

    code: str = "SUBMISSION_REJECTED"

    def __init__(self, authority_code: str, detail: str):
        self.authority_code = authority_code
        self.detail = detail
        super().__init__(f"Submission rejected ({authority_code}): {detail}")


class InvalidStateTransitionError(DteKernelError):
    """Outcome state change not permitted by the state machine."""

    code: str = "INVALID_OUTCOME_TRANSITION"

    def __init__(self, document_id: str, from_state: str, to_state: str):
        self.document_id = document_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid outcome transition for {document_id}: {from_state} -> {to_state}"
        )


class ImmutabilityViolationError(DteKernelError):
    """Attempt to modify an immutable field of an issued record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")
