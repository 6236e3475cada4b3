"""
Billing error types.

Every failure the billing pipeline can surface is a subclass of BillingError,
so callers can catch the whole family or a single kind.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for billing failures."""

    reason = "billing_error"


class UnresolvedPricing(BillingError):
    """No catalog record and no family heuristic matched a model name.

    Only raised inside the pricing module; callers always receive the
    generic default price instead.
    """

    reason = "unresolved_pricing"

    def __init__(self, model_name: str):
        super().__init__(f"No pricing heuristic for model: {model_name}")
        self.model_name = model_name


class DataIntegrityFailure(BillingError):
    """Usage report carries no units, no cost and no estimable text."""

    reason = "data_integrity_failure"

    def __init__(self, message: str, model_name: Optional[str] = None):
        super().__init__(message)
        self.model_name = model_name


class InvalidCharge(BillingError):
    """Charge resolves to zero points even after the minimum floor."""

    reason = "invalid_charge"


class InsufficientBalance(BillingError):
    """User balance does not cover the charge. Nothing was deducted."""

    reason = "insufficient_balance"

    def __init__(self, user_id: str, balance: int, requested: int):
        self.user_id = user_id
        self.balance = balance
        self.requested = requested
        self.shortfall = requested - balance
        super().__init__(
            f"Insufficient balance for {user_id}: "
            f"requested {requested}, available {balance}, short by {self.shortfall}"
        )


class PersistenceError(BillingError):
    """Ledger write failed and was rolled back. Safe to retry."""

    reason = "persistence_error"
