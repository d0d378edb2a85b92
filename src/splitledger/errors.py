"""Error taxonomy for ledger operations.

Each error carries the HTTP status it maps to and whether a caller may retry.
"""


class LedgerError(Exception):
    """Base class for all ledger errors."""

    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Bad input shape or values. The caller must fix the input."""

    status_code = 400


class InvalidSplit(ValidationError):
    """Split amounts or percentages do not add up."""

    pass


class EmptyParticipants(ValidationError):
    """An expense was split among nobody."""

    pass


class InvalidPayment(ValidationError):
    """A payment is non-positive, exceeds the outstanding amount, or targets a paid debt."""

    pass


class InvariantViolation(LedgerError):
    """Stored amounts no longer conserve."""

    status_code = 400


class AuthenticationError(LedgerError):
    """Missing or rejected credential."""

    status_code = 401


class AuthorizationError(LedgerError):
    """Caller lacks group membership or the required role."""

    status_code = 403


class NotFoundError(LedgerError):
    """Referenced record does not exist."""

    status_code = 404


class ConflictError(LedgerError):
    """Uniqueness constraint hit. Retried internally as an upsert."""

    status_code = 409


class RateLimitExceeded(LedgerError):
    """Too many requests from one source inside the window."""

    status_code = 429


class TransientStorageError(LedgerError):
    """Persistence timed out or is unavailable. Retry with backoff."""

    status_code = 503
    retryable = True
