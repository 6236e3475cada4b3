"""
Data models for storage layer.

Defines ledger entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid


class BillingStatus(Enum):
    """Outcome of a charge attempt."""
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class BillingEvent:
    """Immutable record of a charge attempt.

    Append-only events that form the audit trail of every billing attempt,
    successful or not. Once written, these records must never be modified.
    """
    event_id: str
    user_id: str
    model_name: str
    input_units: int
    output_units: int
    total_units: int
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    points_deducted: int
    exchange_rate_snapshot: Decimal
    profit_margin_percent: int
    status: BillingStatus
    timestamp: datetime
    cost_source: Optional[str] = None
    units_estimated: bool = False
    minimum_applied: bool = False
    failure_reason: Optional[str] = None
    request_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


@dataclass(frozen=True)
class ChargeMetadata:
    """Everything the ledger records about a charge besides the points."""
    model_name: str
    exchange_rate_snapshot: Decimal
    profit_margin_percent: int
    input_units: int = 0
    output_units: int = 0
    total_units: int = 0
    input_cost: Decimal = Decimal("0")
    output_cost: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    cost_source: Optional[str] = None
    units_estimated: bool = False
    minimum_applied: bool = False
    request_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None

    def to_event(
        self,
        user_id: str,
        points_deducted: int,
        status: BillingStatus,
        failure_reason: Optional[str] = None,
    ) -> BillingEvent:
        return BillingEvent(
            event_id=uuid.uuid4().hex,
            user_id=user_id,
            model_name=self.model_name,
            input_units=self.input_units,
            output_units=self.output_units,
            total_units=self.total_units,
            input_cost=self.input_cost,
            output_cost=self.output_cost,
            total_cost=self.total_cost,
            points_deducted=points_deducted,
            exchange_rate_snapshot=self.exchange_rate_snapshot,
            profit_margin_percent=self.profit_margin_percent,
            status=status,
            timestamp=datetime.now(timezone.utc),
            cost_source=self.cost_source,
            units_estimated=self.units_estimated,
            minimum_applied=self.minimum_applied,
            failure_reason=failure_reason,
            request_id=self.request_id,
            conversation_id=self.conversation_id,
            message_id=self.message_id,
        )


@dataclass(frozen=True)
class ExchangeRate:
    """Points issued per unit of billing currency, from ``effective_at`` on."""
    points_per_currency_unit: Decimal
    effective_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    set_by: Optional[str] = None

    def __post_init__(self):
        """Validate rate is positive."""
        if self.points_per_currency_unit <= 0:
            raise ValueError("points_per_currency_unit must be > 0")


@dataclass(frozen=True)
class PriceChange:
    """Audit entry for an operator change to the price catalog."""
    model_name: str
    change_type: str  # "created", "input_price", "output_price", "fixed_fee" or "status"
    old_value: Optional[str]
    new_value: str
    changed_by: str
    timestamp: datetime
    reason: Optional[str] = None
