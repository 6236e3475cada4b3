"""
Configuration service.

Single owner of the margin, exchange rate and charge policy in force.
Operator changes are persisted; billing code only ever sees immutable
snapshots.
"""

import threading
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import structlog

from points_meter.storage.models import ExchangeRate
from points_meter.storage.repository import (
    fetch_current_exchange_rate,
    fetch_exchange_rate_history,
    get_setting,
    insert_exchange_rate,
    put_setting,
)
from .loader import AppConfig, BillingConfig

logger = structlog.get_logger(__name__)

MARGIN_SETTING = "margin_percent"


class ConfigService:
    """Owns billing configuration and hands out per-call snapshots."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.db_path = config.db_path
        self._lock = threading.Lock()

    def snapshot(self) -> BillingConfig:
        """Values in force right now."""
        with self._lock:
            return BillingConfig(
                margin_percent=self.margin_percent(),
                exchange_rate=self.exchange_rate(),
                currency=self.config.billing.currency,
                charge_policy=self.config.charge_policy,
            )

    def margin_percent(self) -> int:
        stored = get_setting(MARGIN_SETTING, self.db_path)
        if stored is None:
            return self.config.billing.margin_percent
        return int(stored)

    def exchange_rate(self) -> Decimal:
        current = fetch_current_exchange_rate(db_path=self.db_path)
        if current is None:
            return self.config.billing.exchange_rate
        return current.points_per_currency_unit

    def set_margin(self, margin_percent: int, changed_by: str = "operator") -> None:
        """Persist a new profit margin.

        Raises:
            ValueError: If the margin is negative
        """
        if margin_percent < 0:
            raise ValueError("margin_percent must be >= 0")
        with self._lock:
            put_setting(MARGIN_SETTING, str(int(margin_percent)), self.db_path)
        logger.info("margin_updated", margin_percent=margin_percent, changed_by=changed_by)

    def set_exchange_rate(
        self,
        points_per_currency_unit: Decimal,
        changed_by: str = "operator",
        effective_at: Optional[datetime] = None,
    ) -> ExchangeRate:
        """Append a new exchange rate. Past billing events keep their snapshot.

        Raises:
            ValueError: If the rate is not positive
        """
        kwargs = {"effective_at": effective_at} if effective_at is not None else {}
        rate = ExchangeRate(
            points_per_currency_unit=Decimal(points_per_currency_unit),
            set_by=changed_by,
            **kwargs,
        )
        with self._lock:
            insert_exchange_rate(rate, self.db_path)
        logger.info(
            "exchange_rate_updated",
            points_per_currency_unit=str(rate.points_per_currency_unit),
            changed_by=changed_by,
        )
        return rate

    def exchange_rate_history(self, limit: int = 20) -> List[ExchangeRate]:
        return fetch_exchange_rate_history(limit=limit, db_path=self.db_path)
