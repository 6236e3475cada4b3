"""
Cost calculation.

Turns unit counts, a price source and a profit margin into a marked-up cost
in the billing currency. All arithmetic is Decimal.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Tuple, Union

from .pricing import PriceRecord, ServiceKind, default_pricing
from .token_counter import TokenCounts, UsageReport

UNITS_PER_PRICE = Decimal("1000")
COST_QUANTUM = Decimal("0.00000001")


class CostSource(Enum):
    """Where the cost of a billing event came from, best provenance first."""
    FIXED_FEE = "fixed_fee"
    REPORTED_TOTAL = "reported_total"
    REPORTED_SPLIT = "reported_split"
    CATALOG = "catalog"
    DEFAULT = "default"


@dataclass(frozen=True)
class CostBreakdown:
    """Post-margin cost of a billable event."""
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    source: CostSource


def margin_multiplier(margin_percent: Union[int, Decimal]) -> Decimal:
    """Return ``1 + margin_percent / 100``.

    Raises:
        ValueError: If the margin would make costs negative
    """
    multiplier = Decimal(1) + Decimal(margin_percent) / Decimal(100)
    if multiplier < 0:
        raise ValueError(f"margin_percent must be >= -100, got {margin_percent}")
    return multiplier


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def _unit_cost(units: int, price_per_1k: Decimal, multiplier: Decimal) -> Decimal:
    return _quantize(Decimal(units) / UNITS_PER_PRICE * price_per_1k * multiplier)


def _split_reported_total(
    total_cost: Decimal,
    counts: TokenCounts,
    report: UsageReport,
    multiplier: Decimal,
) -> Tuple[Decimal, Decimal]:
    if report.has_split_cost:
        input_cost = _quantize((report.reported_input_cost or Decimal("0")) * multiplier)
        # Per-side costs that overshoot the total are ignored
        if input_cost <= total_cost:
            return input_cost, total_cost - input_cost
    side_units = counts.input_units + counts.output_units
    if side_units > 0:
        input_cost = _quantize(total_cost * Decimal(counts.input_units) / Decimal(side_units))
        return input_cost, total_cost - input_cost
    return Decimal("0"), total_cost


def compute_cost(
    counts: TokenCounts,
    margin_percent: Union[int, Decimal],
    report: Optional[UsageReport] = None,
    price: Optional[PriceRecord] = None,
    price_from_catalog: bool = True,
) -> CostBreakdown:
    """Compute the marked-up cost of a billable event.

    Cost sources, highest priority first:

    0. Fixed-fee price record: the fee itself
    1. Report carries ``reported_total_cost``: marked up directly
    2. Report carries per-side costs: each marked up, then summed
    3. Price record: per-1K unit prices applied to the counts
    4. No price at all: default unit prices for the model

    Args:
        counts: Normalized unit counts
        margin_percent: Profit margin percentage
        report: Usage report, if any reported costs should be considered
        price: Resolved price record
        price_from_catalog: False when ``price`` came from the default table

    Returns:
        CostBreakdown with Decimal costs
    """
    multiplier = margin_multiplier(margin_percent)

    if price is not None and price.service_kind == ServiceKind.FIXED_FEE:
        total_cost = _quantize(price.fixed_fee * multiplier)
        return CostBreakdown(
            input_cost=Decimal("0"),
            output_cost=total_cost,
            total_cost=total_cost,
            source=CostSource.FIXED_FEE,
        )

    if report is not None and report.reported_total_cost is not None and report.reported_total_cost > 0:
        total_cost = _quantize(report.reported_total_cost * multiplier)
        input_cost, output_cost = _split_reported_total(total_cost, counts, report, multiplier)
        return CostBreakdown(
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=total_cost,
            source=CostSource.REPORTED_TOTAL,
        )

    if report is not None and report.has_split_cost:
        input_cost = _quantize((report.reported_input_cost or Decimal("0")) * multiplier)
        output_cost = _quantize((report.reported_output_cost or Decimal("0")) * multiplier)
        return CostBreakdown(
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=input_cost + output_cost,
            source=CostSource.REPORTED_SPLIT,
        )

    if price is not None:
        input_price = price.input_unit_price
        output_price = price.output_unit_price
        source = CostSource.CATALOG if price_from_catalog else CostSource.DEFAULT
    else:
        input_price, output_price = default_pricing(report.model_name if report else "")
        source = CostSource.DEFAULT

    input_cost = _unit_cost(counts.input_units, input_price, multiplier)
    output_cost = _unit_cost(counts.output_units, output_price, multiplier)
    return CostBreakdown(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
        source=source,
    )


def derive_unit_prices(report: UsageReport, counts: TokenCounts) -> Optional[Tuple[Decimal, Decimal]]:
    """Back-compute raw per-1K prices from a report's own cost and units.

    Returns:
        (input, output) price per 1K units, or None if the report does not
        carry enough information
    """
    if (
        report.reported_input_cost is not None
        and report.reported_output_cost is not None
        and report.has_split_cost
        and counts.input_units > 0
        and counts.output_units > 0
    ):
        return (
            _quantize(report.reported_input_cost / Decimal(counts.input_units) * UNITS_PER_PRICE),
            _quantize(report.reported_output_cost / Decimal(counts.output_units) * UNITS_PER_PRICE),
        )
    if report.reported_unit_cost is not None and report.reported_unit_cost > 0:
        unit_price = _quantize(report.reported_unit_cost * UNITS_PER_PRICE)
        return unit_price, unit_price
    if report.reported_total_cost is not None and report.reported_total_cost > 0 and counts.total_units > 0:
        unit_price = _quantize(report.reported_total_cost / Decimal(counts.total_units) * UNITS_PER_PRICE)
        return unit_price, unit_price
    return None
