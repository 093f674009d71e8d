"""
Error Taxonomy and Operation Results

Typed failures raised inside the engine and the result value the loan
manager returns to callers instead of letting exceptions escape.
"""

from dataclasses import dataclass
from typing import Any, Optional


class LoanLedgerError(Exception):
    """Base class for all engine errors"""

    #: Short machine-readable code, also used by the HTTP layer
    code = "loan_ledger_error"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ValidationError(LoanLedgerError):
    """Bad input shape or range; rejected before any write"""
    code = "validation_error"


class NotFoundError(LoanLedgerError):
    """Loan missing or owned by someone else"""
    code = "not_found"


class StateConflictError(LoanLedgerError):
    """Operation not allowed in the loan's current state"""
    code = "state_conflict"


class ConcurrencyConflictError(LoanLedgerError):
    """Optimistic version check failed at save time"""
    code = "concurrency_conflict"


class CollaboratorFailure(LoanLedgerError):
    """A collaborator or the store failed; the whole operation was rolled back"""
    code = "collaborator_failure"


@dataclass
class OperationResult:
    """
    Outcome of a loan manager operation.

    ``reason`` is a human-readable message callers can render directly;
    ``error`` carries the typed failure (and its cause) when ``success`` is False.
    """
    success: bool
    reason: Optional[str] = None
    error: Optional[LoanLedgerError] = None
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None, reason: Optional[str] = None) -> 'OperationResult':
        return cls(success=True, reason=reason, value=value)

    @classmethod
    def failed(cls, error: LoanLedgerError) -> 'OperationResult':
        return cls(success=False, reason=error.message, error=error)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None

    def __bool__(self) -> bool:
        return self.success
