"""
Domain error taxonomy.

Callers can tell "your input was wrong" (``ValidationError``) from
"someone else already acted" (``ConflictError``).  ``ProcessorError``
leaves the booking retryable; ``ReconciliationError`` means money moved
without the ledger reflecting it.
"""


class BookingError(Exception):
    """Base class for every error raised by the settlement core."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookingError):
    """Input rejected before any write."""


class NotFoundError(BookingError):
    pass


class TokenExpiredError(BookingError):
    """Access token exists but is past its ``expires_at``."""


class PermissionDeniedError(BookingError):
    pass


class ConflictError(BookingError):
    """The record is not in the state the caller expected."""


class InvalidStateTransition(ConflictError):
    """Raised when a booking status change violates the state machine."""


class ProcessorError(BookingError):
    """Payment processor declined, timed out or was unreachable."""

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class ReconciliationError(BookingError):
    """Money moved at the processor but the ledger does not show it yet."""

    def __init__(self, message: str, *, issue_id: str | None = None):
        super().__init__(message)
        self.issue_id = issue_id
