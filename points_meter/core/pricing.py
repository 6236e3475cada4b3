"""
Price records and pricing resolution.

Resolves the effective per-model price from the price catalog, falling back
to a built-in default table keyed by model family when nothing matches.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Iterable, Optional, Tuple

import structlog

from .errors import UnresolvedPricing
from .outcome import BestEffort

if TYPE_CHECKING:
    from points_meter.storage.repository import PriceCatalog

logger = structlog.get_logger(__name__)


class PriceOrigin(Enum):
    """Who created a price record."""
    OPERATOR_SET = "operator_set"
    AUTO_DERIVED = "auto_derived"


class ServiceKind(Enum):
    """How a service is billed."""
    TOKEN_METERED = "token_metered"
    FIXED_FEE = "fixed_fee"


class MatchTier(IntEnum):
    """Catalog matching tiers, lower wins."""
    OPERATOR_EXACT = 1
    OPERATOR_PARTIAL = 2
    AUTO_EXACT = 3
    AUTO_PARTIAL = 4
    FAMILY = 5
    DEFAULT = 6


@dataclass(frozen=True)
class PriceRecord:
    """Per-model pricing, in currency per 1K units."""
    model_name: str
    input_unit_price: Decimal
    output_unit_price: Decimal
    is_active: bool = True
    origin: PriceOrigin = PriceOrigin.OPERATOR_SET
    service_kind: ServiceKind = ServiceKind.TOKEN_METERED
    fixed_fee: Optional[Decimal] = None

    def __post_init__(self):
        """Validate prices."""
        if not self.model_name or not self.model_name.strip():
            raise ValueError("model_name is required and cannot be empty")
        if self.input_unit_price < 0:
            raise ValueError("input_unit_price cannot be negative")
        if self.output_unit_price < 0:
            raise ValueError("output_unit_price cannot be negative")
        if self.service_kind == ServiceKind.FIXED_FEE:
            if self.fixed_fee is None or self.fixed_fee < 0:
                raise ValueError("fixed_fee must be set for fixed-fee services")

    @property
    def key(self) -> str:
        """Case-insensitive catalog key."""
        return normalize_model_name(self.model_name)


@dataclass(frozen=True)
class PriceMatch:
    """A catalog record together with the tier that selected it."""
    record: PriceRecord
    tier: MatchTier


@dataclass(frozen=True)
class PriceResolution:
    """Effective price for a billable event."""
    record: PriceRecord
    tier: MatchTier
    auto_create: BestEffort

    @property
    def from_catalog(self) -> bool:
        return self.tier != MatchTier.DEFAULT


# Family canonical token -> aliases seen in upstream model names.
# Order matters: more specific families first.
MODEL_FAMILIES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("gpt-4o", ("gpt-4o", "gpt4o")),
    ("gpt-4", ("gpt-4", "gpt4")),
    ("gpt-3.5-turbo", ("gpt-3.5", "gpt35", "chatgpt")),
    ("claude-3-opus", ("claude-opus", "claude3-opus", "claude3opus", "opus")),
    ("claude-3-sonnet", ("claude-sonnet", "claude3-sonnet", "claude3sonnet", "sonnet")),
    ("claude-3-haiku", ("claude-haiku", "claude3-haiku", "claude3haiku", "haiku")),
    ("gemini", ("gemini", "bard", "palm")),
    ("llama", ("llama",)),
)

# Default (input, output) prices per 1K units when the catalog has no match
GENERIC_DEFAULT_PRICING = (Decimal("2.0"), Decimal("6.0"))


def normalize_model_name(model_name: str) -> str:
    return (model_name or "").strip().lower()


def family_default_pricing(model_name: str) -> Tuple[Decimal, Decimal]:
    """Look up default prices by coarse model-family keywords.

    Args:
        model_name: Upstream model identifier

    Returns:
        (input, output) price per 1K units

    Raises:
        UnresolvedPricing: If no family keyword matches
    """
    model = normalize_model_name(model_name)

    if "gpt-4o" in model or "gpt4o" in model:
        return Decimal("5.0"), Decimal("15.0")
    if "gpt-4" in model or "gpt4" in model:
        return Decimal("30.0"), Decimal("60.0")
    if "gpt-3.5" in model or "gpt35" in model:
        return Decimal("0.5"), Decimal("1.5")
    if "claude-3" in model or "claude3" in model:
        if "opus" in model:
            return Decimal("15.0"), Decimal("75.0")
        if "haiku" in model:
            return Decimal("0.25"), Decimal("1.25")
        # sonnet and unnamed claude-3 variants
        return Decimal("3.0"), Decimal("15.0")
    if "gemini" in model:
        return Decimal("0.5"), Decimal("1.5")
    if "llama" in model:
        return Decimal("0.2"), Decimal("0.2")

    raise UnresolvedPricing(model_name)


def default_pricing(model_name: str) -> Tuple[Decimal, Decimal]:
    """Default prices for a model; never fails."""
    try:
        return family_default_pricing(model_name)
    except UnresolvedPricing:
        logger.info("generic_default_pricing", model=model_name)
        return GENERIC_DEFAULT_PRICING


def _is_partial_match(target: str, candidate: str) -> bool:
    return candidate in target or target in candidate


def match_price(model_name: str, records: Iterable[PriceRecord]) -> Optional[PriceMatch]:
    """Find the best catalog record for a model name.

    Matching order, first hit wins, case-insensitive, active records only:

    1. Operator-set, exact name
    2. Operator-set, substring in either direction
    3. Auto-derived, exact name
    4. Auto-derived, substring in either direction
    5. Model family: the name contains a family alias and a record name
       contains that family's canonical token (operator-set first)

    Args:
        model_name: Upstream model identifier
        records: Catalog records in catalog order

    Returns:
        PriceMatch, or None if nothing matched
    """
    target = normalize_model_name(model_name)
    if not target:
        return None

    active = [r for r in records if r.is_active]
    operator = [r for r in active if r.origin == PriceOrigin.OPERATOR_SET]
    derived = [r for r in active if r.origin == PriceOrigin.AUTO_DERIVED]

    tiers = (
        (MatchTier.OPERATOR_EXACT, operator, lambda key: key == target),
        (MatchTier.OPERATOR_PARTIAL, operator, lambda key: _is_partial_match(target, key)),
        (MatchTier.AUTO_EXACT, derived, lambda key: key == target),
        (MatchTier.AUTO_PARTIAL, derived, lambda key: _is_partial_match(target, key)),
    )
    for tier, candidates, predicate in tiers:
        for record in candidates:
            if predicate(record.key):
                return PriceMatch(record=record, tier=tier)

    for canonical, aliases in MODEL_FAMILIES:
        if not any(alias in target for alias in aliases):
            continue
        for record in operator + derived:
            if canonical in record.key:
                return PriceMatch(record=record, tier=MatchTier.FAMILY)

    return None


class PricingResolver:
    """Resolves effective prices against a PriceCatalog.

    The catalog must provide ``records()`` returning the current snapshot and
    ``ensure_auto_derived(record)`` performing an idempotent upsert.
    """

    def __init__(self, catalog: "PriceCatalog"):
        self.catalog = catalog

    def match(self, model_name: str) -> Optional[PriceMatch]:
        match = match_price(model_name, self.catalog.records())
        if match is not None:
            logger.debug(
                "price_resolved",
                model=model_name,
                record=match.record.model_name,
                tier=match.tier.name,
            )
        return match

    def resolve(self, model_name: str) -> Optional[PriceRecord]:
        """Return the effective catalog record, or None if nothing matches."""
        match = self.match(model_name)
        return match.record if match is not None else None

    def resolve_with_default(self, model_name: str) -> PriceResolution:
        """Resolve a price, falling back to the default table.

        On a default hit an auto-derived record is upserted so the next
        lookup hits the catalog. Upsert failures are logged and reported in
        the returned outcome; they never abort billing.

        Args:
            model_name: Upstream model identifier

        Returns:
            PriceResolution that always carries a usable record
        """
        match = self.match(model_name)
        if match is not None:
            return PriceResolution(
                record=match.record,
                tier=match.tier,
                auto_create=BestEffort.skipped("auto_create_price_record"),
            )
        return self.default_resolution(model_name)

    def default_resolution(self, model_name: str) -> PriceResolution:
        """Resolve from the default table and upsert an auto-derived record."""
        input_price, output_price = default_pricing(model_name)
        record = PriceRecord(
            model_name=model_name.strip() or "unknown",
            input_unit_price=input_price,
            output_unit_price=output_price,
            origin=PriceOrigin.AUTO_DERIVED,
        )
        logger.info(
            "default_pricing_used",
            model=model_name,
            input_price=str(input_price),
            output_price=str(output_price),
        )
        if normalize_model_name(model_name):
            outcome = BestEffort.attempt(
                "auto_create_price_record", self.catalog.ensure_auto_derived, record
            )
        else:
            outcome = BestEffort.skipped("auto_create_price_record")
        return PriceResolution(record=record, tier=MatchTier.DEFAULT, auto_create=outcome)

    def record_observed_price(
        self,
        model_name: str,
        input_unit_price: Decimal,
        output_unit_price: Decimal,
    ) -> BestEffort:
        """Write an auto-derived record from provider-reported prices.

        Skipped when an operator-set record already covers the model.
        """
        if not normalize_model_name(model_name):
            return BestEffort.skipped("record_observed_price")
        match = self.match(model_name)
        if match is not None and match.record.origin == PriceOrigin.OPERATOR_SET:
            return BestEffort.skipped("record_observed_price")
        record = PriceRecord(
            model_name=model_name.strip(),
            input_unit_price=input_unit_price,
            output_unit_price=output_unit_price,
            origin=PriceOrigin.AUTO_DERIVED,
        )
        return BestEffort.attempt(
            "record_observed_price", self.catalog.ensure_auto_derived, record
        )
