"""Error taxonomy shared by the settlement, download and reputation services.

Every error carries the HTTP status and machine-readable code the API
renders, so services can raise without knowing about FastAPI.
"""

from typing import Optional


class MarketError(Exception):
    """Base class for all marketplace errors."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        """Render the error as an API payload."""
        payload = {"detail": self.message, "error_code": self.error_code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(MarketError):
    """Bad input. Surfaced to the caller and never retried."""

    status_code = 400
    error_code = "validation_error"


class OutOfRange(ValidationError):
    """Price outside the configured range."""

    error_code = "out_of_range"


class MemoDecodeError(ValidationError):
    """Settlement memo is malformed, tampered with or of an unknown version."""

    error_code = "invalid_memo"


class AuthenticationError(MarketError):
    status_code = 401
    error_code = "unauthenticated"


class AuthorizationError(MarketError):
    """Ownership mismatch on a token or credential."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(MarketError):
    status_code = 404
    error_code = "not_found"


class ConflictError(MarketError):
    status_code = 409
    error_code = "conflict"


class AlreadyEvaluated(ConflictError):
    error_code = "already_evaluated"


class InvalidTransition(ConflictError):
    """A batch or leg was asked to move through a transition its state forbids."""

    error_code = "invalid_transition"


class InvalidToken(MarketError):
    status_code = 404
    error_code = "invalid_token"


class TokenExpired(MarketError):
    status_code = 410
    error_code = "token_expired"


Expired = TokenExpired


class AttemptsExhausted(MarketError):
    status_code = 429
    error_code = "attempts_exhausted"


class LedgerError(MarketError):
    """Ledger failure whose cause is not understood.

    A batch never moves forward on this error.
    """

    status_code = 502
    error_code = "ledger_error"

    def __init__(self, message: str, result: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.result = result


class LedgerTransient(LedgerError):
    """Timeout, congestion or a temporary rejection. Safe to retry."""

    status_code = 503
    error_code = "ledger_unavailable"


class LedgerOutcomeUnknown(LedgerTransient):
    """The request may have reached the ledger but no answer came back.

    The operation may still land, so it is resolved by lookup rather than
    repeated blindly.
    """

    error_code = "ledger_outcome_unknown"


class LedgerTimeout(LedgerOutcomeUnknown):
    """The call timed out; the operation may still land."""

    status_code = 504
    error_code = "ledger_timeout"


class LedgerFatal(LedgerError):
    """Invalid signature, insufficient funds, malformed transaction."""

    status_code = 502
    error_code = "ledger_rejected"


class RetryExhausted(LedgerTransient):
    """Transient failures persisted past the retry ceiling."""

    error_code = "retry_exhausted"

    def __init__(self, message: str, last_error: Optional[Exception] = None, attempts: int = 0):
        result = getattr(last_error, "result", None)
        super().__init__(message, result=result)
        self.last_error = last_error
        self.attempts = attempts


class SigningError(MarketError):
    """The platform cannot sign: missing secret or a foreign account."""

    status_code = 503
    error_code = "signing_unavailable"
