"""
Exception hierarchy for the class ledger.

Recoverable errors (insufficient credit, bad category) are meant to be
turned into user-facing messages by the caller. PersistenceError wraps
storage failures; the transaction that raised it has been rolled back.
"""

from typing import Any, Dict, Optional


class LedgerServiceError(Exception):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InsufficientCreditError(LedgerServiceError):
    def __init__(self, user_id: str, category: str, balance: int):
        self.user_id = user_id
        self.category = category
        self.balance = balance
        super().__init__(
            f"User {user_id} has no {category} credits available (balance {balance})",
            details={"user_id": user_id, "category": category, "balance": balance},
        )


class InvalidCategoryError(LedgerServiceError):
    def __init__(self, value: Any):
        self.value = value
        super().__init__(
            f"Invalid class category: {value!r}",
            details={"value": value},
        )


class RecordNotFoundError(LedgerServiceError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


class AccountMismatchError(LedgerServiceError):
    """A record was written through an account it does not belong to."""


class PersistenceError(LedgerServiceError):
    pass
