"""
This file contains custom, application-specific exceptions.

Financial-state errors (ValidationError, StateConflictError, NotFoundError)
abort the operation and are surfaced to the caller. ConsistencyError carries
the dry-run result so an operator can inspect it. DownstreamNotificationError
is only ever logged.
"""
from typing import Any, Optional


class LedgerError(Exception):
    """Base class for every error raised by the ledger and billing engine."""
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LedgerError):
    """Raised on malformed input, e.g. a negative value on a 'set hours' call."""
    pass

class InvalidPaymentError(ValidationError):
    """Raised when a payment amount is zero, negative or over the outstanding balance."""
    pass

class StateConflictError(LedgerError):
    """Raised when an operation is not valid for the current invoice/class status."""
    pass

class EmptyInvoiceError(StateConflictError):
    """Raised when publishing an invoice that has no items."""
    pass

class NotFoundError(LedgerError):
    """Raised when an invoice, item, class or guardian does not exist."""
    pass

class ConsistencyError(LedgerError):
    """
    Raised when reconciliation finds a mismatch it cannot repair
    (e.g. a negative frozen rate). `result` holds the dry-run output.
    """
    def __init__(self, message: str, result: Any = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)
        self.result = result

class DownstreamNotificationError(LedgerError):
    """Raised when the notification collaborator fails. Never propagated to callers."""
    pass
