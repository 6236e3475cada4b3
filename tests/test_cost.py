"""
Unit tests for cost calculation.

Tests margin application, cost source priority and price derivation.
"""

from decimal import Decimal

import pytest

from points_meter.core.conversion import to_points
from points_meter.core.cost import (
    CostSource,
    compute_cost,
    derive_unit_prices,
    margin_multiplier,
)
from points_meter.core.pricing import PriceOrigin, PriceRecord, ServiceKind
from points_meter.core.token_counter import TokenCounts, UsageReport


def _counts(input_units, output_units):
    return TokenCounts(input_units, output_units, input_units + output_units)


GPT4 = PriceRecord(
    model_name="gpt-4",
    input_unit_price=Decimal("30.0"),
    output_unit_price=Decimal("60.0"),
)


class TestMargin:
    """Test margin multiplier."""

    def test_margin_multiplier(self):
        assert margin_multiplier(25) == Decimal("1.25")
        assert margin_multiplier(0) == Decimal("1")

    def test_margin_below_minus_100_rejected(self):
        with pytest.raises(ValueError):
            margin_multiplier(-150)


class TestCatalogCost:
    """Test cost from price records."""

    def test_operator_price_with_margin(self):
        report = UsageReport(model_name="gpt-4", input_units=1500, output_units=800)
        cost = compute_cost(_counts(1500, 800), 25, report=report, price=GPT4)

        assert cost.input_cost == Decimal("56.25")
        assert cost.output_cost == Decimal("60.00")
        assert cost.total_cost == Decimal("116.25")
        assert cost.source == CostSource.CATALOG

    def test_default_price_when_none_resolved(self):
        report = UsageReport(model_name="mistral-large", input_units=1000, output_units=1000)
        cost = compute_cost(_counts(1000, 1000), 0, report=report)

        assert cost.total_cost == Decimal("8.0")
        assert cost.source == CostSource.DEFAULT

    def test_default_record_marked_as_default(self):
        record = PriceRecord(
            model_name="gpt-4",
            input_unit_price=Decimal("30.0"),
            output_unit_price=Decimal("60.0"),
            origin=PriceOrigin.AUTO_DERIVED,
        )
        cost = compute_cost(_counts(1000, 0), 0, price=record, price_from_catalog=False)
        assert cost.total_cost == Decimal("30.0")
        assert cost.source == CostSource.DEFAULT

    def test_costs_are_quantized(self):
        cost = compute_cost(_counts(1, 0), 0, price=PriceRecord(
            model_name="tiny",
            input_unit_price=Decimal("0.000001"),
            output_unit_price=Decimal("0"),
        ))
        # 1/1000 * 0.000001 = 1e-9, rounds half up to 0 at 8 places
        assert cost.input_cost == Decimal("0E-8")


class TestReportedCost:
    """Test provider-reported cost handling."""

    def test_reported_total_is_marked_up(self):
        report = UsageReport(model_name="unknown-model", reported_total_cost=Decimal("0.01"))
        cost = compute_cost(_counts(0, 0), 20, report=report)

        assert cost.total_cost == Decimal("0.012")
        assert cost.source == CostSource.REPORTED_TOTAL
        assert to_points(cost.total_cost, Decimal("10000")) == 120

    def test_reported_total_beats_catalog_price(self):
        report = UsageReport(
            model_name="gpt-4",
            input_units=1500,
            output_units=800,
            reported_total_cost=Decimal("0.5"),
        )
        cost = compute_cost(_counts(1500, 800), 0, report=report, price=GPT4)
        assert cost.total_cost == Decimal("0.5")
        assert cost.source == CostSource.REPORTED_TOTAL

    def test_reported_total_split_by_reported_input_cost(self):
        report = UsageReport(
            model_name="gpt-4",
            reported_input_cost=Decimal("0.004"),
            reported_output_cost=Decimal("0.006"),
            reported_total_cost=Decimal("0.01"),
        )
        cost = compute_cost(_counts(100, 100), 0, report=report)
        assert cost.input_cost == Decimal("0.004")
        assert cost.output_cost == Decimal("0.006")

    def test_overshooting_input_cost_falls_back_to_unit_share(self):
        report = UsageReport(
            model_name="gpt-4",
            reported_input_cost=Decimal("0.02"),
            reported_total_cost=Decimal("0.01"),
        )
        cost = compute_cost(_counts(1000, 3000), 25, report=report)

        assert cost.total_cost == Decimal("0.0125")
        assert cost.input_cost >= 0
        assert cost.output_cost >= 0
        assert cost.input_cost == Decimal("0.003125")
        assert cost.input_cost + cost.output_cost == cost.total_cost

    def test_reported_total_split_by_unit_share(self):
        report = UsageReport(model_name="gpt-4", reported_total_cost=Decimal("0.03"))
        cost = compute_cost(_counts(1000, 2000), 0, report=report)
        assert cost.input_cost == Decimal("0.01")
        assert cost.output_cost == Decimal("0.02")
        assert cost.input_cost + cost.output_cost == cost.total_cost

    def test_split_cost_missing_side_is_zero(self):
        report = UsageReport(model_name="gpt-4", reported_input_cost=Decimal("0.01"))
        cost = compute_cost(_counts(100, 100), 50, report=report)

        assert cost.input_cost == Decimal("0.015")
        assert cost.output_cost == Decimal("0")
        assert cost.total_cost == Decimal("0.015")
        assert cost.source == CostSource.REPORTED_SPLIT

    def test_fixed_fee_beats_reported_cost(self):
        record = PriceRecord(
            model_name="dall-e-3",
            input_unit_price=Decimal("0"),
            output_unit_price=Decimal("0"),
            service_kind=ServiceKind.FIXED_FEE,
            fixed_fee=Decimal("0.04"),
        )
        report = UsageReport(model_name="dall-e-3", reported_total_cost=Decimal("1.0"))
        cost = compute_cost(_counts(0, 0), 25, report=report, price=record)

        assert cost.total_cost == Decimal("0.05")
        assert cost.input_cost == Decimal("0")
        assert cost.source == CostSource.FIXED_FEE


class TestDeriveUnitPrices:
    """Test back-computing per-1K prices from reports."""

    def test_from_split_costs(self):
        report = UsageReport(
            model_name="mistral-large",
            reported_input_cost=Decimal("0.03"),
            reported_output_cost=Decimal("0.06"),
        )
        assert derive_unit_prices(report, _counts(1000, 1000)) == (Decimal("0.03"), Decimal("0.06"))

    def test_from_unit_cost(self):
        report = UsageReport(model_name="mistral-large", reported_unit_cost=Decimal("0.000002"))
        assert derive_unit_prices(report, _counts(10, 10)) == (Decimal("0.002"), Decimal("0.002"))

    def test_from_total_cost(self):
        report = UsageReport(model_name="mistral-large", reported_total_cost=Decimal("0.09"))
        assert derive_unit_prices(report, _counts(1000, 2000)) == (Decimal("0.03"), Decimal("0.03"))

    def test_not_enough_information(self):
        report = UsageReport(model_name="mistral-large", reported_total_cost=Decimal("0.09"))
        assert derive_unit_prices(report, _counts(0, 0)) is None
