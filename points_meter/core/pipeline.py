"""
Billing pipeline.

Runs one usage report through pricing resolution, unit normalization, cost
calculation, points conversion, charge enforcement and the ledger. Every
invocation leaves exactly one billing event behind, completed or failed.
"""

import sqlite3
from dataclasses import dataclass, field, replace
from typing import List, Optional

import structlog

from .conversion import to_points
from .cost import CostBreakdown, compute_cost, derive_unit_prices
from .errors import BillingError, DataIntegrityFailure, PersistenceError
from .guardrails import ChargeDecision, enforce_charge
from .outcome import BestEffort
from .pricing import PriceMatch, PricingResolver, ServiceKind
from .token_counter import TokenCounts, UsageReport, normalize
from points_meter.config.loader import AppConfig, BillingConfig
from points_meter.config.service import ConfigService
from points_meter.storage.ledger import BalanceCache, LedgerRecorder
from points_meter.storage.models import BillingEvent, ChargeMetadata
from points_meter.storage.repository import PriceCatalog, initialize_schema

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BillingOutcome:
    """Result of a successfully billed usage report."""
    event: BillingEvent
    new_balance: int
    counts: TokenCounts
    cost: CostBreakdown
    decision: ChargeDecision
    catalog_writes: List[BestEffort] = field(default_factory=list)
    side_effects: List[BestEffort] = field(default_factory=list)


def _fixed_fee_counts(report: UsageReport) -> TokenCounts:
    input_units = report.input_units or 0
    output_units = report.output_units or 0
    return TokenCounts(
        input_units=input_units,
        output_units=output_units,
        total_units=report.total_units or input_units + output_units,
    )


class BillingPipeline:
    """Turns usage reports into ledger charges."""

    def __init__(
        self,
        resolver: PricingResolver,
        ledger: LedgerRecorder,
        config_service: ConfigService,
    ):
        self.resolver = resolver
        self.ledger = ledger
        self.config_service = config_service

    def process(
        self,
        user_id: str,
        report: UsageReport,
        request_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> BillingOutcome:
        """Bill one usage report.

        Args:
            user_id: User to charge
            report: Usage report from the provider integration
            request_id: Upstream request identifier, for the audit trail
            conversation_id: Conversation identifier, for the audit trail
            message_id: Message identifier, for the audit trail

        Returns:
            BillingOutcome for the completed charge

        Raises:
            DataIntegrityFailure: Report has no units, no cost and no text
            InvalidCharge: Charge resolves to 0 points after the floor
            InsufficientBalance: Balance does not cover the charge
            PersistenceError: A store read or the ledger write failed, nothing
                was deducted
        """
        config: Optional[BillingConfig] = None
        ids = dict(request_id=request_id, conversation_id=conversation_id, message_id=message_id)

        try:
            config = self.config_service.snapshot()
            counts, cost, catalog_writes = self._price(report, config)
            points = to_points(cost.total_cost, config.exchange_rate)
            decision = enforce_charge(
                points,
                cost.total_cost,
                config.exchange_rate,
                config.charge_policy,
                model=report.model_name,
            )
        except BillingError as e:
            self.ledger.record_failure(user_id, self._metadata(report, config, **ids), e)
            raise
        except sqlite3.Error as e:
            error = PersistenceError(f"Billing store read failed for {report.model_name}: {e}")
            self.ledger.record_failure(user_id, self._metadata(report, config, **ids), error)
            raise error from e

        metadata = replace(
            self._metadata(report, config, **ids),
            input_units=counts.input_units,
            output_units=counts.output_units,
            total_units=counts.total_units,
            input_cost=cost.input_cost,
            output_cost=cost.output_cost,
            total_cost=cost.total_cost,
            cost_source=cost.source.value,
            units_estimated=counts.estimated,
            minimum_applied=decision.minimum_applied,
        )
        result = self.ledger.charge(user_id, decision.points, metadata)

        logger.info(
            "usage_billed",
            user_id=user_id,
            model=report.model_name,
            cost_source=cost.source.value,
            total_cost=str(cost.total_cost),
            points=decision.points,
            new_balance=result.new_balance,
        )
        return BillingOutcome(
            event=result.event,
            new_balance=result.new_balance,
            counts=counts,
            cost=cost,
            decision=decision,
            catalog_writes=catalog_writes,
            side_effects=result.side_effects,
        )

    def _metadata(self, report: UsageReport, config: Optional[BillingConfig], **ids) -> ChargeMetadata:
        if config is not None:
            exchange_rate, margin_percent = config.exchange_rate, config.margin_percent
        else:
            # Snapshot unavailable; fall back to the static configuration
            settings = self.config_service.config.billing
            exchange_rate, margin_percent = settings.exchange_rate, settings.margin_percent
        return ChargeMetadata(
            model_name=report.model_name,
            exchange_rate_snapshot=exchange_rate,
            profit_margin_percent=margin_percent,
            input_units=report.input_units or 0,
            output_units=report.output_units or 0,
            total_units=report.total_units or 0,
            **ids,
        )

    def _price(self, report: UsageReport, config: BillingConfig):
        match: Optional[PriceMatch] = self.resolver.match(report.model_name)

        if match is not None and match.record.service_kind == ServiceKind.FIXED_FEE:
            counts = _fixed_fee_counts(report)
            cost = compute_cost(counts, config.margin_percent, price=match.record)
            return counts, cost, []

        counts = normalize(report)

        if report.is_priced:
            if report.currency and report.currency.strip().upper() != config.currency:
                raise DataIntegrityFailure(
                    f"Usage report for {report.model_name} is priced in {report.currency}, "
                    f"billing currency is {config.currency}",
                    report.model_name,
                )
            catalog_writes = []
            derived = derive_unit_prices(report, counts)
            if derived is not None:
                catalog_writes.append(
                    self.resolver.record_observed_price(report.model_name, *derived)
                )
            cost = compute_cost(
                counts,
                config.margin_percent,
                report=report,
                price=match.record if match is not None else None,
            )
            return counts, cost, catalog_writes

        resolution = self.resolver.resolve_with_default(report.model_name)
        cost = compute_cost(
            counts,
            config.margin_percent,
            report=report,
            price=resolution.record,
            price_from_catalog=resolution.from_catalog,
        )
        return counts, cost, [] if resolution.from_catalog else [resolution.auto_create]


def create_pipeline(config: AppConfig, with_balance_cache: bool = False) -> BillingPipeline:
    """Wire a pipeline against the configured SQLite database.

    Creates the schema if needed.
    """
    initialize_schema(config.db_path)
    ledger = LedgerRecorder(config.db_path)
    if with_balance_cache:
        ledger.balance_cache = BalanceCache(ledger.get_balance)
    return BillingPipeline(
        resolver=PricingResolver(PriceCatalog(config.db_path)),
        ledger=ledger,
        config_service=ConfigService(config),
    )
