"""
Charge floor and ceiling policy.

Enforcement:
1. Minimum charge - every billable event costs at least the floor
2. High-water mark - large charges are flagged, never capped or blocked
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

import structlog

from .anomaly import ChargeAnomaly, detect_charge_anomalies
from .conversion import to_points
from .errors import InvalidCharge

logger = structlog.get_logger(__name__)

DEFAULT_MINIMUM_CHARGE = Decimal("0.0001")
DEFAULT_HIGH_WATER_MARK = Decimal("50")


@dataclass(frozen=True)
class ChargePolicy:
    """Floor and review threshold, both in the billing currency."""
    minimum_charge: Decimal = DEFAULT_MINIMUM_CHARGE
    high_water_mark: Decimal = DEFAULT_HIGH_WATER_MARK

    def __post_init__(self):
        """Validate policy values."""
        if self.minimum_charge <= 0:
            raise ValueError("minimum_charge must be > 0")
        if self.high_water_mark <= 0:
            raise ValueError("high_water_mark must be > 0")


@dataclass(frozen=True)
class ChargeDecision:
    """Final points to charge and why."""
    points: int
    minimum_applied: bool = False
    anomalies: List[ChargeAnomaly] = field(default_factory=list)


def enforce_charge(
    points: int,
    cost: Decimal,
    exchange_rate: Decimal,
    policy: ChargePolicy,
    model: str = "",
) -> ChargeDecision:
    """Apply the minimum-charge floor and flag unusually large charges.

    Args:
        points: Points computed from the cost
        cost: Post-margin cost in the billing currency
        exchange_rate: Points per currency unit used for ``points``
        policy: Charge policy
        model: Model name for anomaly reports

    Returns:
        ChargeDecision with the points to deduct

    Raises:
        InvalidCharge: If even the minimum charge converts to 0 points
    """
    minimum_applied = False

    if points <= 0:
        points = to_points(policy.minimum_charge, exchange_rate)
        minimum_applied = True
        if points <= 0:
            raise InvalidCharge(
                f"Charge for {model or 'event'} resolves to 0 points: cost {cost}, "
                f"minimum {policy.minimum_charge} at rate {exchange_rate}"
            )
        logger.info(
            "minimum_charge_applied",
            model=model,
            cost=str(cost),
            points=points,
        )

    high_water_points = max(to_points(policy.high_water_mark, exchange_rate), 1)
    anomalies = detect_charge_anomalies(model, points, cost, high_water_points)
    for anomaly in anomalies:
        logger.warning(
            "charge_anomaly",
            model=anomaly.model,
            rule=anomaly.rule,
            severity=anomaly.severity.value,
            points=anomaly.observed_points,
            threshold=anomaly.threshold_points,
            cost=str(anomaly.cost),
        )

    return ChargeDecision(points=points, minimum_applied=minimum_applied, anomalies=anomalies)
