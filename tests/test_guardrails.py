"""
Unit tests for charge enforcement.

Tests the minimum-charge floor, points conversion and high-water flagging.
"""

from decimal import Decimal

import pytest

from points_meter.core.anomaly import AnomalySeverity
from points_meter.core.conversion import cost_to_points_ceiling, points_to_cost, to_points
from points_meter.core.errors import InvalidCharge
from points_meter.core.guardrails import ChargePolicy, enforce_charge

RATE = Decimal("10000")


class TestConversion:
    """Test currency to points conversion."""

    def test_rounds_half_up(self):
        assert to_points(Decimal("0.00005"), RATE) == 1
        assert to_points(Decimal("0.000049"), RATE) == 0

    def test_scenario_rate(self):
        assert to_points(Decimal("0.012"), RATE) == 120

    def test_non_positive_rate_rejected(self):
        with pytest.raises(ValueError):
            to_points(Decimal("1"), Decimal("0"))

    def test_points_to_cost(self):
        assert points_to_cost(120, RATE) == Decimal("0.012")

    def test_ceiling_for_top_ups(self):
        assert cost_to_points_ceiling(Decimal("0.00001"), RATE) == 1
        assert cost_to_points_ceiling(Decimal("1.5"), RATE) == 15000


class TestChargePolicy:
    """Test policy validation."""

    def test_defaults(self):
        policy = ChargePolicy()
        assert policy.minimum_charge == Decimal("0.0001")
        assert policy.high_water_mark == Decimal("50")

    def test_zero_minimum_rejected(self):
        with pytest.raises(ValueError, match="minimum_charge"):
            ChargePolicy(minimum_charge=Decimal("0"))

    def test_zero_high_water_mark_rejected(self):
        with pytest.raises(ValueError, match="high_water_mark"):
            ChargePolicy(high_water_mark=Decimal("0"))


class TestMinimumCharge:
    """Test the minimum-charge floor."""

    def test_positive_points_untouched(self):
        decision = enforce_charge(120, Decimal("0.012"), RATE, ChargePolicy())
        assert decision.points == 120
        assert not decision.minimum_applied
        assert decision.anomalies == []

    def test_zero_points_get_minimum(self):
        cost = Decimal("0.00000100")
        decision = enforce_charge(to_points(cost, RATE), cost, RATE, ChargePolicy())
        assert decision.points == 1
        assert decision.minimum_applied

    def test_minimum_rounding_to_zero_is_invalid(self):
        with pytest.raises(InvalidCharge, match="0 points"):
            enforce_charge(0, Decimal("0"), Decimal("1"), ChargePolicy(), model="gpt-4")


class TestHighWaterMark:
    """Test that large charges are flagged, not capped."""

    def test_charge_above_mark_flagged_not_capped(self):
        decision = enforce_charge(600000, Decimal("60"), RATE, ChargePolicy(), model="gpt-4")

        assert decision.points == 600000
        assert len(decision.anomalies) == 1
        anomaly = decision.anomalies[0]
        assert anomaly.rule == "high_water_mark"
        assert anomaly.severity == AnomalySeverity.WARNING
        assert anomaly.threshold_points == 500000
        assert anomaly.model == "gpt-4"

    def test_extreme_charge_is_critical(self):
        decision = enforce_charge(6000000, Decimal("600"), RATE, ChargePolicy())

        assert decision.points == 6000000
        rules = {a.rule: a.severity for a in decision.anomalies}
        assert rules == {
            "high_water_mark": AnomalySeverity.WARNING,
            "extreme_charge": AnomalySeverity.CRITICAL,
        }

    def test_charge_at_mark_not_flagged(self):
        decision = enforce_charge(500000, Decimal("50"), RATE, ChargePolicy())
        assert decision.anomalies == []
