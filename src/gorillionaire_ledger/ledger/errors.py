"""Domain errors raised by ledger operations.

Every error carries a ``status_code`` hint for whatever HTTP layer sits
in front of the ledger.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base exception for ledger operations."""

    status_code = 500


class ValidationError(LedgerError):
    """Raised when inputs are malformed. Nothing was written."""

    status_code = 400


class NotFoundError(LedgerError):
    """Raised when a ledger, quest or referral that must exist does not."""

    status_code = 404


class ConflictError(LedgerError):
    """Raised for duplicate operations (already claimed, already referred, ...)."""

    status_code = 400


class TransientInfrastructureError(LedgerError):
    """Raised when storage is unavailable or a transaction lost a race.

    The operation left no partial writes and may be retried with backoff.
    """

    status_code = 503

    def __init__(self, message: str, last_exception: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception
