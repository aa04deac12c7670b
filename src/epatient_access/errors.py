"""Error kinds raised by the access-control core.

Every failure carries a stable ``ErrorKind`` so callers can map it to a
response without parsing messages. ``public_message`` is what may be shown to
an unauthenticated caller; it never exposes storage internals or whether an
identifier exists.
"""

from enum import Enum


class ErrorKind(Enum):
    VALIDATION_ERROR = "validation_error"
    MISSING_JUSTIFICATION = "missing_justification"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    ALREADY_CONSUMED = "already_consumed"
    CONFLICT = "conflict"
    NO_REFERENCE_ENROLLED = "no_reference_enrolled"
    NO_MATCH = "no_match"
    NO_CANDIDATE = "no_candidate"
    UNAUTHORIZED = "unauthorized"
    STORAGE_FAILURE = "storage_failure"


class AccessError(Exception):
    """Base class for every error surfaced by epatient_access."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    retryable: bool = False

    def __init__(self, message: str = ""):
        self.message = message or self.kind.value.replace("_", " ")
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        return {"error": self.kind.value, "message": self.public_message}


class ValidationError(AccessError):
    kind = ErrorKind.VALIDATION_ERROR


class MissingJustification(ValidationError):
    kind = ErrorKind.MISSING_JUSTIFICATION


class NotFound(AccessError):
    kind = ErrorKind.NOT_FOUND


class Expired(AccessError):
    kind = ErrorKind.EXPIRED


class Mismatch(AccessError):
    kind = ErrorKind.MISMATCH


class AlreadyConsumed(AccessError):
    kind = ErrorKind.ALREADY_CONSUMED


class Conflict(AccessError):
    kind = ErrorKind.CONFLICT


class NoReferenceEnrolled(AccessError):
    kind = ErrorKind.NO_REFERENCE_ENROLLED


class NoMatch(AccessError):
    kind = ErrorKind.NO_MATCH


class NoCandidate(AccessError):
    kind = ErrorKind.NO_CANDIDATE


class Unauthorized(AccessError):
    kind = ErrorKind.UNAUTHORIZED


class StorageFailure(AccessError):
    """Storage was unreachable or rejected the operation.

    The underlying driver error is chained as ``__cause__`` for operators and
    logs; callers only ever see the generic public message.
    """

    kind = ErrorKind.STORAGE_FAILURE
    retryable = True

    @property
    def public_message(self) -> str:
        return "Storage temporarily unavailable, please retry"
