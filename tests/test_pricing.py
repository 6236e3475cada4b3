"""
Unit tests for price resolution.

Tests matching tiers, operator precedence, default pricing and auto-derived
record creation.
"""

import os
import shutil
import tempfile
from decimal import Decimal
from unittest.mock import Mock

import pytest

from points_meter.core.errors import UnresolvedPricing
from points_meter.core.pricing import (
    GENERIC_DEFAULT_PRICING,
    MatchTier,
    PriceOrigin,
    PriceRecord,
    PricingResolver,
    ServiceKind,
    default_pricing,
    family_default_pricing,
    match_price,
)
from points_meter.storage.repository import PriceCatalog, initialize_schema


def _record(name, input_price="1.0", output_price="2.0", origin=PriceOrigin.OPERATOR_SET, active=True):
    return PriceRecord(
        model_name=name,
        input_unit_price=Decimal(input_price),
        output_unit_price=Decimal(output_price),
        is_active=active,
        origin=origin,
    )


class TestPriceRecord:
    """Test PriceRecord validation."""

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError):
            _record("gpt-4", input_price="-1")

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            _record("   ")

    def test_fixed_fee_requires_fee(self):
        with pytest.raises(ValueError):
            PriceRecord(
                model_name="dall-e-3",
                input_unit_price=Decimal("0"),
                output_unit_price=Decimal("0"),
                service_kind=ServiceKind.FIXED_FEE,
            )

    def test_key_is_lower_case(self):
        assert _record("GPT-4 ").key == "gpt-4"


class TestMatchPrice:
    """Test the matching order."""

    def test_operator_exact_match(self):
        records = [_record("gpt-4")]
        match = match_price("GPT-4", records)
        assert match.tier == MatchTier.OPERATOR_EXACT
        assert match.record.model_name == "gpt-4"

    def test_operator_record_beats_auto_derived_exact(self):
        """An operator substring hit outranks an auto-derived exact hit."""
        records = [
            _record("gpt-4-turbo-2024", "9.0", "9.0", origin=PriceOrigin.AUTO_DERIVED),
            _record("gpt-4-turbo", "10.0", "30.0"),
        ]
        match = match_price("gpt-4-turbo-2024", records)
        assert match.tier == MatchTier.OPERATOR_PARTIAL
        assert match.record.input_unit_price == Decimal("10.0")

    def test_partial_match_either_direction(self):
        records = [_record("claude-3-sonnet-20240229")]
        assert match_price("claude-3-sonnet", records).tier == MatchTier.OPERATOR_PARTIAL

    def test_auto_derived_exact(self):
        records = [_record("mistral-large", origin=PriceOrigin.AUTO_DERIVED)]
        assert match_price("mistral-large", records).tier == MatchTier.AUTO_EXACT

    def test_auto_derived_partial(self):
        records = [_record("mistral", origin=PriceOrigin.AUTO_DERIVED)]
        assert match_price("mistral-large-latest", records).tier == MatchTier.AUTO_PARTIAL

    def test_family_alias_match(self):
        records = [_record("anthropic/claude-3-haiku", "0.25", "1.25")]
        match = match_price("claude-haiku", records)
        assert match.tier == MatchTier.FAMILY
        assert match.record.model_name == "anthropic/claude-3-haiku"

    def test_inactive_records_ignored(self):
        records = [_record("gpt-4", active=False)]
        assert match_price("gpt-4", records) is None

    def test_empty_name_matches_nothing(self):
        assert match_price("   ", [_record("gpt-4")]) is None

    def test_no_match(self):
        assert match_price("mistral-large", [_record("gpt-4")]) is None

    def test_same_inputs_same_result(self):
        records = [
            _record("gpt-4", "30.0", "60.0"),
            _record("gpt-4-32k", "60.0", "120.0"),
        ]
        first = match_price("gpt-4-32k-0613", records)
        second = match_price("gpt-4-32k-0613", records)
        assert first == second


class TestDefaultPricing:
    """Test the family default table."""

    @pytest.mark.parametrize("model,expected", [
        ("gpt-4o-mini", (Decimal("5.0"), Decimal("15.0"))),
        ("gpt-4-0613", (Decimal("30.0"), Decimal("60.0"))),
        ("gpt-3.5-turbo", (Decimal("0.5"), Decimal("1.5"))),
        ("claude-3-opus", (Decimal("15.0"), Decimal("75.0"))),
        ("claude-3-haiku", (Decimal("0.25"), Decimal("1.25"))),
        ("claude-3-sonnet", (Decimal("3.0"), Decimal("15.0"))),
        ("gemini-pro", (Decimal("0.5"), Decimal("1.5"))),
        ("llama-3-70b", (Decimal("0.2"), Decimal("0.2"))),
    ])
    def test_family_defaults(self, model, expected):
        assert family_default_pricing(model) == expected

    def test_unknown_family_raises(self):
        with pytest.raises(UnresolvedPricing, match="mistral-large"):
            family_default_pricing("mistral-large")

    def test_unknown_family_falls_back_to_generic(self):
        assert default_pricing("mistral-large") == GENERIC_DEFAULT_PRICING


class TestPricingResolver:
    """Test resolution against a real catalog."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.catalog = PriceCatalog(self.db_path)
        self.resolver = PricingResolver(self.catalog)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_resolve_returns_none_without_match(self):
        assert self.resolver.resolve("gpt-4") is None

    def test_default_resolution_creates_auto_record(self):
        resolution = self.resolver.resolve_with_default("gpt-4")

        assert resolution.tier == MatchTier.DEFAULT
        assert not resolution.from_catalog
        assert resolution.auto_create.ok
        assert resolution.auto_create.value is True

        record = self.catalog.get("gpt-4")
        assert record.origin == PriceOrigin.AUTO_DERIVED
        assert record.input_unit_price == Decimal("30.0")

        # Next lookup hits the catalog
        again = self.resolver.resolve_with_default("gpt-4")
        assert again.tier == MatchTier.AUTO_EXACT
        assert again.from_catalog

    def test_auto_create_is_idempotent(self):
        record = PriceRecord(
            model_name="mistral-large",
            input_unit_price=Decimal("2.0"),
            output_unit_price=Decimal("6.0"),
            origin=PriceOrigin.AUTO_DERIVED,
        )
        assert self.catalog.ensure_auto_derived(record) is True
        assert self.catalog.ensure_auto_derived(record) is False
        assert len(self.catalog.records()) == 1

    def test_operator_price_wins_over_auto_derived(self):
        self.resolver.resolve_with_default("gpt-4")
        self.catalog.set_operator_price("gpt-4", Decimal("25.0"), Decimal("50.0"))

        record = self.resolver.resolve("gpt-4")
        assert record.origin == PriceOrigin.OPERATOR_SET
        assert record.input_unit_price == Decimal("25.0")

    def test_auto_create_failure_does_not_fail_resolution(self):
        catalog = Mock()
        catalog.records.return_value = ()
        catalog.ensure_auto_derived.side_effect = RuntimeError("disk full")

        resolution = PricingResolver(catalog).resolve_with_default("gpt-4")

        assert resolution.record.input_unit_price == Decimal("30.0")
        assert not resolution.auto_create.ok
        assert "disk full" in resolution.auto_create.error

    def test_observed_price_skipped_for_operator_models(self):
        self.catalog.set_operator_price("gpt-4", Decimal("30.0"), Decimal("60.0"))
        outcome = self.resolver.record_observed_price("gpt-4", Decimal("1.0"), Decimal("1.0"))
        assert outcome.ok
        assert outcome.value is None
        assert self.catalog.get("gpt-4").input_unit_price == Decimal("30.0")

    def test_observed_price_recorded_for_new_models(self):
        outcome = self.resolver.record_observed_price("mistral-large", Decimal("4.0"), Decimal("12.0"))
        assert outcome.value is True
        record = self.catalog.get("mistral-large")
        assert record.origin == PriceOrigin.AUTO_DERIVED
        assert record.output_unit_price == Decimal("12.0")
