"""
Error taxonomy for the filing submission and e-verification workflow.

Every failure the workflow can surface is a FilingError subclass carrying:
- kind: one of five classes that drive the caller's retry policy
- code: a stable machine-readable identifier
- message: human readable text for the user-facing layer
- details: structured context (missing ids, authority error list, ...)

Retry policy by kind:
- VALIDATION: fix the input and call again
- PROVIDER_TRANSIENT: retry with backoff (session/attempt limits still apply)
- PROVIDER_REJECTED: surface to the user, never retried automatically
- CONFLICT: reconcile before doing anything else
- FATAL: filing is put on hold until manually resolved
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Classes of workflow errors."""
    VALIDATION = "VALIDATION"
    PROVIDER_TRANSIENT = "PROVIDER_TRANSIENT"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"
    CONFLICT = "CONFLICT"
    FATAL = "FATAL"


HTTP_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.PROVIDER_TRANSIENT: 503,
    ErrorKind.PROVIDER_REJECTED: 502,
    ErrorKind.CONFLICT: 409,
    ErrorKind.FATAL: 500,
}


class FilingError(Exception):
    """Base class for all workflow errors."""

    kind: ErrorKind = ErrorKind.VALIDATION
    code: str = "FILING_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        """Only transient provider failures may be retried as-is."""
        return self.kind == ErrorKind.PROVIDER_TRANSIENT

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API error bodies."""
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(kind={self.kind.value}, code={self.code})>"


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationError(FilingError):
    """Caller must correct the request; nothing was changed."""
    kind = ErrorKind.VALIDATION
    code = "VALIDATION"


class InvalidStateError(ValidationError):
    """Raised when a transition is not legal from the filing's current state."""
    code = "INVALID_STATE"

    def __init__(self, message: str, current_state: str, event: str):
        super().__init__(
            message,
            details={"current_state": current_state, "event": event},
        )
        self.current_state = current_state
        self.event = event


class DeclarationsIncompleteError(ValidationError):
    code = "DECLARATIONS_INCOMPLETE"


class NotVerifiedError(ValidationError):
    code = "NOT_VERIFIED"


class NotFoundError(ValidationError):
    """Filing, session or group does not exist."""
    code = "NOT_FOUND"

    @property
    def http_status(self) -> int:
        return 404


# =============================================================================
# PROVIDER_TRANSIENT
# =============================================================================

class ProviderUnavailableError(FilingError):
    """Identity provider timed out or is unreachable."""
    kind = ErrorKind.PROVIDER_TRANSIENT
    code = "PROVIDER_UNAVAILABLE"


class AuthorityUnavailableError(FilingError):
    """Filing authority timed out, is unreachable, or its circuit is open."""
    kind = ErrorKind.PROVIDER_TRANSIENT
    code = "AUTHORITY_UNAVAILABLE"


# =============================================================================
# PROVIDER_REJECTED
# =============================================================================

class ProviderRejectedError(FilingError):
    """Identity provider refused the subject (bad identity, invalid certificate)."""
    kind = ErrorKind.PROVIDER_REJECTED
    code = "PROVIDER_REJECTED"


class InvalidIdentityError(ProviderRejectedError):
    code = "INVALID_IDENTITY"


class AuthorityRejectedError(FilingError):
    """Filing authority refused the upload; nothing was received."""
    kind = ErrorKind.PROVIDER_REJECTED
    code = "AUTHORITY_REJECTED"


# =============================================================================
# CONFLICT
# =============================================================================

class ConflictError(FilingError):
    kind = ErrorKind.CONFLICT
    code = "CONFLICT"


class AlreadySubmittedError(ConflictError):
    code = "ALREADY_SUBMITTED"


class SessionAlreadyActiveError(ConflictError):
    code = "ALREADY_ACTIVE"


class FilingBusyError(ConflictError):
    """Another mutating operation holds the filing's lock."""
    code = "FILING_BUSY"


class ConcurrentUpdateError(ConflictError):
    """Optimistic version check failed on save."""
    code = "CONCURRENT_UPDATE"


class RateLimitedError(ConflictError):
    """Resend requested too early or after the cap was reached."""
    code = "RATE_LIMITED"


class SessionExpiredError(ConflictError):
    code = "SESSION_EXPIRED"


class SessionClosedError(ConflictError):
    """Session reached a terminal state and cannot be used again."""
    code = "SESSION_CLOSED"


# =============================================================================
# FATAL
# =============================================================================

class IntegrityViolationError(FilingError):
    """Stored data contradicts a workflow invariant."""
    kind = ErrorKind.FATAL
    code = "INTEGRITY_VIOLATION"


class FilingOnHoldError(IntegrityViolationError):
    code = "FILING_ON_HOLD"
