"""
Anomaly detection for charges.

Flags unusually large charges for operator review. Detection never blocks a
charge; anomalies are attached to the charge decision and logged.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List

# Charges this many times above the high-water mark are critical
CRITICAL_MULTIPLIER = 10


class AnomalySeverity(Enum):
    """Severity levels for detected anomalies."""
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ChargeAnomaly:
    """Detected anomaly with details and explanation."""
    model: str
    rule: str  # "high_water_mark" or "extreme_charge"
    severity: AnomalySeverity
    observed_points: int
    threshold_points: int
    cost: Decimal
    message: str


def detect_charge_anomalies(
    model: str,
    points: int,
    cost: Decimal,
    high_water_points: int,
) -> List[ChargeAnomaly]:
    """Detect anomalously large charges.

    Rules:
    - high_water_mark (WARNING): points > high-water mark
    - extreme_charge (CRITICAL): points > 10 * high-water mark

    Args:
        model: Model that produced the charge
        points: Points about to be charged
        cost: Post-margin cost behind the points
        high_water_points: High-water mark in points

    Returns:
        List of detected anomalies (empty if none)
    """
    if high_water_points <= 0:
        raise ValueError("high_water_points must be > 0")

    anomalies = []

    if points > high_water_points:
        anomalies.append(ChargeAnomaly(
            model=model,
            rule="high_water_mark",
            severity=AnomalySeverity.WARNING,
            observed_points=points,
            threshold_points=high_water_points,
            cost=cost,
            message=f"Large charge: {points:,} points (${cost}) exceeds high-water mark of {high_water_points:,} points"
        ))

    extreme_threshold = high_water_points * CRITICAL_MULTIPLIER
    if points > extreme_threshold:
        anomalies.append(ChargeAnomaly(
            model=model,
            rule="extreme_charge",
            severity=AnomalySeverity.CRITICAL,
            observed_points=points,
            threshold_points=extreme_threshold,
            cost=cost,
            message=f"Extreme charge: {points:,} points (${cost}) exceeds {CRITICAL_MULTIPLIER}x the high-water mark ({extreme_threshold:,} points)"
        ))

    return anomalies
