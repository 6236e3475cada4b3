"""
Usage reports and token-count normalization.

Trusts provider-reported counts when present and estimates them from text
when a report arrives with no counts and no cost.
"""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_CEILING
from typing import Any, Mapping, Optional, Tuple

import structlog

from .errors import DataIntegrityFailure

logger = structlog.get_logger(__name__)

# Hiragana/katakana, CJK extension A, CJK unified ideographs, hangul, compatibility ideographs
CJK_PATTERN = re.compile("[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff]")

CJK_CHARS_PER_UNIT = Decimal("1.5")
OTHER_CHARS_PER_UNIT = Decimal("4")
FORMATTING_OVERHEAD = Decimal("1.1")

MIN_INPUT_UNITS = 50
MIN_OUTPUT_UNITS = 100
MIN_TOTAL_UNITS = 150

# Used when an excerpt is supplied but holds nothing countable
FALLBACK_INPUT_UNITS = 150
FALLBACK_OUTPUT_UNITS = 300
FALLBACK_TOTAL_UNITS = 450


def _to_decimal(value: Any, field: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise DataIntegrityFailure(f"Invalid {field} in usage report: {value!r}")


def _to_int(value: Any, field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise DataIntegrityFailure(f"Invalid {field} in usage report: {value!r}")


@dataclass(frozen=True)
class UsageReport:
    """Usage of a single upstream AI call.

    A report is "priced" when it carries its own cost (a total, or both
    per-side costs); otherwise the catalog and estimation are relied on.
    """
    model_name: str
    input_units: Optional[int] = None
    output_units: Optional[int] = None
    total_units: Optional[int] = None
    reported_unit_cost: Optional[Decimal] = None
    reported_input_cost: Optional[Decimal] = None
    reported_output_cost: Optional[Decimal] = None
    reported_total_cost: Optional[Decimal] = None
    currency: Optional[str] = None
    source_text_excerpt: Optional[str] = None

    def __post_init__(self):
        """Reject negative counts and costs."""
        for name in ("input_units", "output_units", "total_units"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise DataIntegrityFailure(f"{name} cannot be negative", self.model_name)
        for name in ("reported_unit_cost", "reported_input_cost",
                     "reported_output_cost", "reported_total_cost"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise DataIntegrityFailure(f"{name} cannot be negative", self.model_name)

    @property
    def has_cost_signal(self) -> bool:
        """True when any reported cost is positive."""
        return any(
            cost is not None and cost > 0
            for cost in (
                self.reported_total_cost,
                self.reported_input_cost,
                self.reported_output_cost,
            )
        )

    @property
    def has_split_cost(self) -> bool:
        """True when per-side costs are reported; a missing side counts as 0."""
        if self.reported_input_cost is None and self.reported_output_cost is None:
            return False
        return (self.reported_input_cost or 0) + (self.reported_output_cost or 0) > 0

    @property
    def is_priced(self) -> bool:
        return (
            self.reported_total_cost is not None and self.reported_total_cost > 0
        ) or self.has_split_cost

    @classmethod
    def from_provider_usage(
        cls,
        model_name: str,
        usage: Mapping[str, Any],
        source_text_excerpt: Optional[str] = None,
    ) -> "UsageReport":
        """Build a report from an OpenAI/Dify style usage mapping.

        Recognized keys: ``prompt_tokens``, ``completion_tokens``,
        ``total_tokens``, ``prompt_price``, ``completion_price``,
        ``total_price``, ``unit_price`` and ``currency``.

        Raises:
            DataIntegrityFailure: If a numeric field cannot be parsed
        """
        return cls(
            model_name=model_name,
            input_units=_to_int(usage.get("prompt_tokens"), "prompt_tokens"),
            output_units=_to_int(usage.get("completion_tokens"), "completion_tokens"),
            total_units=_to_int(usage.get("total_tokens"), "total_tokens"),
            reported_unit_cost=_to_decimal(usage.get("unit_price"), "unit_price"),
            reported_input_cost=_to_decimal(usage.get("prompt_price"), "prompt_price"),
            reported_output_cost=_to_decimal(usage.get("completion_price"), "completion_price"),
            reported_total_cost=_to_decimal(usage.get("total_price"), "total_price"),
            currency=usage.get("currency") or None,
            source_text_excerpt=source_text_excerpt,
        )


@dataclass(frozen=True)
class TokenCounts:
    """Normalized unit counts used for cost calculation."""
    input_units: int
    output_units: int
    total_units: int
    estimated: bool = False


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def split_total_units(total_units: int) -> Tuple[int, int]:
    """Split a bare total one third input, two thirds output."""
    input_units = _ceil(Decimal(total_units) / 3)
    return input_units, total_units - input_units


def estimate_units_from_text(text: str) -> TokenCounts:
    """Estimate unit counts from text.

    CJK characters count one unit per 1.5 characters, everything else one
    unit per 4 characters, plus 10% for formatting. The estimate is split
    one third input, two thirds output, and floored at 50 input, 100 output
    and 150 total. Text with nothing countable gets the fixed 150/300/450
    estimate.

    Args:
        text: Prompt and/or reply text of the call

    Returns:
        Estimated TokenCounts
    """
    stripped = (text or "").strip()
    if not stripped:
        return TokenCounts(
            input_units=FALLBACK_INPUT_UNITS,
            output_units=FALLBACK_OUTPUT_UNITS,
            total_units=FALLBACK_TOTAL_UNITS,
            estimated=True,
        )

    cjk_chars = len(CJK_PATTERN.findall(stripped))
    other_chars = len(stripped) - cjk_chars
    raw_units = (
        Decimal(cjk_chars) / CJK_CHARS_PER_UNIT
        + Decimal(other_chars) / OTHER_CHARS_PER_UNIT
    )
    units = _ceil(raw_units * FORMATTING_OVERHEAD)

    input_units, output_units = split_total_units(units)

    input_units = max(input_units, MIN_INPUT_UNITS)
    output_units = max(output_units, MIN_OUTPUT_UNITS)
    total_units = max(input_units + output_units, MIN_TOTAL_UNITS)

    return TokenCounts(
        input_units=input_units,
        output_units=output_units,
        total_units=total_units,
        estimated=True,
    )


def normalize(report: UsageReport) -> TokenCounts:
    """Normalize the unit counts of a usage report.

    - Non-zero counts pass through unchanged (a missing total is the sum)
    - A bare total is split one third input, two thirds output
    - Zero counts with a reported cost pass through as zeros
    - Zero counts, no cost, but a text excerpt: estimate from the text
    - Zero counts, no cost, no excerpt: data-integrity failure

    Args:
        report: Usage report to normalize

    Returns:
        TokenCounts for cost calculation

    Raises:
        DataIntegrityFailure: If the report has no usable signal at all
    """
    input_units = report.input_units or 0
    output_units = report.output_units or 0
    total_units = report.total_units or 0

    if total_units and not input_units and not output_units:
        input_units, output_units = split_total_units(total_units)
        logger.info(
            "total_units_split",
            model=report.model_name,
            input_units=input_units,
            output_units=output_units,
        )
        return TokenCounts(input_units, output_units, total_units)

    if total_units or input_units or output_units:
        return TokenCounts(
            input_units=input_units,
            output_units=output_units,
            total_units=total_units or input_units + output_units,
        )

    if report.has_cost_signal:
        return TokenCounts(input_units=0, output_units=0, total_units=0)

    if report.source_text_excerpt is None:
        raise DataIntegrityFailure(
            f"Usage report for {report.model_name} has zero units, zero cost "
            f"and no text to estimate from; investigate the upstream integration",
            report.model_name,
        )

    counts = estimate_units_from_text(report.source_text_excerpt)
    logger.info(
        "units_estimated",
        model=report.model_name,
        input_units=counts.input_units,
        output_units=counts.output_units,
        total_units=counts.total_units,
    )
    return counts
