"""Exception taxonomy shared by the calculation engine and the ledger."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class BillingError(Exception):
    """Base class for every error raised by Billbook."""


class ValidationError(BillingError, ValueError):
    """Raised when quantity, rate, discount or payment input is malformed."""


class InsufficientStock(BillingError):
    """Raised when a line requests more stock than the transaction allows."""

    def __init__(self, message: str, *, item_ids: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.item_ids = list(item_ids or [])


class LedgerInvariantViolation(BillingError):
    """Raised when a ledger posting would break the running-balance rules.

    This always points at a logic bug upstream and is never corrected
    silently.
    """


class SubmissionLocked(BillingError):
    """Raised when another ledger-mutating submission is still in flight."""

    def __init__(self, active_key: Optional[str]) -> None:
        super().__init__(f"Submission already in progress: {active_key}")
        self.active_key = active_key


class BusinessRuleViolation(BillingError):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced party, item or ledger entry is unknown."""


class ConfirmationRequired(BusinessRuleViolation):
    """Raised when a return needs cash paid out and nobody confirmed it."""

    def __init__(self, cash_payment_required: Decimal) -> None:
        super().__init__(
            f"Return requires a cash payment of {cash_payment_required}; explicit confirmation needed"
        )
        self.cash_payment_required = cash_payment_required


__all__ = [
    "BillingError",
    "ValidationError",
    "InsufficientStock",
    "LedgerInvariantViolation",
    "SubmissionLocked",
    "BusinessRuleViolation",
    "MissingReferenceError",
    "ConfirmationRequired",
]
