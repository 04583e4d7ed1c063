"""
Escrow ledger error taxonomy.

Every error carries a stable error_code and an is_retryable flag so callers
(the trade coordinator, UI layers, schedulers) can act on it without parsing
messages. to_reason() gives the structured form surfaced to users.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class EscrowLedgerError(Exception):
    """Base ledger error with context"""

    error_code = "ledger_error"

    def __init__(self, message: str, is_retryable: bool = False, **details: Any):
        super().__init__(message)
        self.message = message
        self.is_retryable = is_retryable
        self.details = details

    def to_reason(self) -> Dict[str, Any]:
        reason = {"code": self.error_code, "message": self.message, "retryable": self.is_retryable}
        for key, value in self.details.items():
            reason[key] = str(value) if isinstance(value, Decimal) else value
        return reason


class ValidationError(EscrowLedgerError):
    """Malformed or out-of-range input; never retryable"""
    error_code = "validation_error"


class NotFound(EscrowLedgerError):
    error_code = "not_found"


class InsufficientFunds(EscrowLedgerError):
    error_code = "insufficient_funds"

    def __init__(self, account_id: int, requested: Decimal, available: Decimal):
        super().__init__(
            f"Account {account_id} has {available} available, {requested} requested",
            account_id=account_id, requested=requested, available=available,
        )


class DuplicateOperation(EscrowLedgerError):
    """Operation already performed or conflicting with one in flight"""
    error_code = "duplicate_operation"


class DuplicateLock(DuplicateOperation):
    error_code = "duplicate_lock"


class InvalidState(EscrowLedgerError):
    error_code = "invalid_state"

    def __init__(self, message: str, current_state: Optional[str] = None, **details: Any):
        super().__init__(message, current_state=current_state, **details)
        self.current_state = current_state


class SettlementFailure(EscrowLedgerError):
    """External settlement call failed; transient failures may be retried by the caller"""
    error_code = "settlement_failure"

    def __init__(self, message: str, transient: bool = True, **details: Any):
        super().__init__(message, is_retryable=transient, transient=transient, **details)
        self.transient = transient


class ManualInterventionRequired(SettlementFailure):
    """Permanent settlement failure that an operator has to resolve"""
    error_code = "manual_intervention_required"

    def __init__(self, message: str, intervention_id: Optional[int] = None, **details: Any):
        super().__init__(message, transient=False, intervention_id=intervention_id, **details)
        self.intervention_id = intervention_id


class ConcurrencyConflict(EscrowLedgerError):
    """Could not obtain exclusive access in time; safe to retry"""
    error_code = "concurrency_conflict"

    def __init__(self, message: str, **details: Any):
        super().__init__(message, is_retryable=True, **details)


class DisputeError(EscrowLedgerError):
    error_code = "dispute_error"
