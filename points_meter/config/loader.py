"""
Configuration management and loading.

Handles billing settings from YAML and the per-call configuration snapshot.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from points_meter.core.guardrails import (
    DEFAULT_HIGH_WATER_MARK,
    DEFAULT_MINIMUM_CHARGE,
    ChargePolicy,
)
from points_meter.storage.db import DEFAULT_DB_PATH

DEFAULT_MARGIN_PERCENT = 25
DEFAULT_EXCHANGE_RATE = Decimal("10000")
DEFAULT_CURRENCY = "USD"
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class BillingSettings:
    """Initial billing values; the configuration service may override them."""
    margin_percent: int = DEFAULT_MARGIN_PERCENT
    exchange_rate: Decimal = DEFAULT_EXCHANGE_RATE
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self):
        """Validate billing values."""
        if self.margin_percent < 0:
            raise ValueError("margin_percent must be >= 0")
        if self.exchange_rate <= 0:
            raise ValueError("exchange_rate must be > 0")
        if not self.currency or not self.currency.strip():
            raise ValueError("currency cannot be empty")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    billing: BillingSettings = field(default_factory=BillingSettings)
    charge_policy: ChargePolicy = field(default_factory=ChargePolicy)
    db_path: str = DEFAULT_DB_PATH
    log_level: str = "INFO"


@dataclass(frozen=True)
class BillingConfig:
    """Values in force for one billing call.

    Taken once at the start of a charge so a concurrent operator edit cannot
    change margin or rate halfway through.
    """
    margin_percent: int
    exchange_rate: Decimal
    currency: str
    charge_policy: ChargePolicy
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _require_dict(value: Any, path: str) -> Dict:
    if not isinstance(value, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return value


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfiguration of margin, rate or
    charge floor. With no path, defaults are returned.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return AppConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    raw_config = _require_dict(raw_config, "root")
    _check_keys(raw_config, {'billing', 'charge_policy', 'storage', 'logging'}, "root")

    billing = _parse_billing(_require_dict(raw_config.get('billing', {}), "billing"))
    policy = _parse_charge_policy(_require_dict(raw_config.get('charge_policy', {}), "charge_policy"))

    storage_data = _require_dict(raw_config.get('storage', {}), "storage")
    _check_keys(storage_data, {'db_path'}, "storage")
    db_path = storage_data.get('db_path', DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'storage.db_path' must be a non-empty string")

    logging_data = _require_dict(raw_config.get('logging', {}), "logging")
    _check_keys(logging_data, {'level'}, "logging")
    log_level = str(logging_data.get('level', "INFO")).upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"'logging.level' must be one of: {sorted(LOG_LEVELS)}")

    return AppConfig(
        billing=billing,
        charge_policy=policy,
        db_path=db_path,
        log_level=log_level,
    )


def _parse_billing(data: Dict) -> BillingSettings:
    _check_keys(data, {'margin_percent', 'exchange_rate', 'currency'}, "billing")

    margin = data.get('margin_percent', DEFAULT_MARGIN_PERCENT)
    if isinstance(margin, bool) or not isinstance(margin, int) or margin < 0:
        raise ValueError("'billing.margin_percent' must be a non-negative integer")

    exchange_rate = DEFAULT_EXCHANGE_RATE
    if 'exchange_rate' in data:
        exchange_rate = _parse_decimal(data['exchange_rate'], "billing.exchange_rate")
        if exchange_rate <= 0:
            raise ValueError("'billing.exchange_rate' must be > 0")

    currency = data.get('currency', DEFAULT_CURRENCY)
    if not isinstance(currency, str) or not currency.strip():
        raise ValueError("'billing.currency' must be a non-empty string")

    return BillingSettings(
        margin_percent=margin,
        exchange_rate=exchange_rate,
        currency=currency.strip().upper(),
    )


def _parse_charge_policy(data: Dict) -> ChargePolicy:
    _check_keys(data, {'minimum_charge', 'high_water_mark'}, "charge_policy")

    minimum_charge = DEFAULT_MINIMUM_CHARGE
    if 'minimum_charge' in data:
        minimum_charge = _parse_decimal(data['minimum_charge'], "charge_policy.minimum_charge")
        if minimum_charge <= 0:
            raise ValueError("'charge_policy.minimum_charge' must be > 0")

    high_water_mark = DEFAULT_HIGH_WATER_MARK
    if 'high_water_mark' in data:
        high_water_mark = _parse_decimal(data['high_water_mark'], "charge_policy.high_water_mark")
        if high_water_mark <= 0:
            raise ValueError("'charge_policy.high_water_mark' must be > 0")

    return ChargePolicy(minimum_charge=minimum_charge, high_water_mark=high_water_mark)
