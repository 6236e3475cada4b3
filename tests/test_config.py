"""
Unit tests for configuration loading and the configuration service.

Tests strict validation and error handling for billing configs.
"""

import os
import shutil
import tempfile
from decimal import Decimal

import pytest
import yaml

from points_meter.config.loader import (
    DEFAULT_EXCHANGE_RATE,
    DEFAULT_MARGIN_PERCENT,
    AppConfig,
    BillingSettings,
    load_config,
)
from points_meter.config.service import ConfigService
from points_meter.storage.repository import initialize_schema


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_defaults_without_file(self):
        config = load_config()
        assert config.billing.margin_percent == DEFAULT_MARGIN_PERCENT
        assert config.billing.exchange_rate == DEFAULT_EXCHANGE_RATE
        assert config.billing.currency == "USD"
        assert config.charge_policy.minimum_charge == Decimal("0.0001")

    def test_valid_config(self):
        path = self._write_config({
            'billing': {'margin_percent': 20, 'exchange_rate': "12000", 'currency': "eur"},
            'charge_policy': {'minimum_charge': "0.001", 'high_water_mark': 10},
            'storage': {'db_path': "billing.db"},
            'logging': {'level': "debug"},
        })
        config = load_config(path)

        assert config.billing.margin_percent == 20
        assert config.billing.exchange_rate == Decimal("12000")
        assert config.billing.currency == "EUR"
        assert config.charge_policy.minimum_charge == Decimal("0.001")
        assert config.charge_policy.high_water_mark == Decimal("10")
        assert config.db_path == "billing.db"
        assert config.log_level == "DEBUG"

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()
        with pytest.raises(ValueError, match="empty"):
            load_config(path)

    def test_unknown_top_level_key(self):
        path = self._write_config({'billing': {}, 'budgets': {}})
        with pytest.raises(ValueError, match="Unknown keys"):
            load_config(path)

    def test_unknown_billing_key(self):
        path = self._write_config({'billing': {'margin': 20}})
        with pytest.raises(ValueError, match="Unknown keys"):
            load_config(path)

    @pytest.mark.parametrize("margin", [-5, 12.5, True, "20"])
    def test_invalid_margin(self, margin):
        path = self._write_config({'billing': {'margin_percent': margin}})
        with pytest.raises(ValueError, match="margin_percent"):
            load_config(path)

    def test_non_positive_exchange_rate(self):
        path = self._write_config({'billing': {'exchange_rate': 0}})
        with pytest.raises(ValueError, match="exchange_rate"):
            load_config(path)

    def test_non_numeric_minimum_charge(self):
        path = self._write_config({'charge_policy': {'minimum_charge': "cheap"}})
        with pytest.raises(ValueError, match="minimum_charge"):
            load_config(path)

    def test_invalid_log_level(self):
        path = self._write_config({'logging': {'level': "LOUD"}})
        with pytest.raises(ValueError, match="logging.level"):
            load_config(path)


class TestConfigService:
    """Test persisted operator configuration."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.service = ConfigService(AppConfig(
            billing=BillingSettings(margin_percent=25, exchange_rate=Decimal("10000")),
            db_path=self.db_path,
        ))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_snapshot_uses_configured_defaults(self):
        snapshot = self.service.snapshot()
        assert snapshot.margin_percent == 25
        assert snapshot.exchange_rate == Decimal("10000")
        assert snapshot.currency == "USD"

    def test_margin_change_is_persisted(self):
        self.service.set_margin(40, changed_by="alice")
        assert self.service.snapshot().margin_percent == 40

        other = ConfigService(self.service.config)
        assert other.margin_percent() == 40

    def test_negative_margin_rejected(self):
        with pytest.raises(ValueError):
            self.service.set_margin(-1)

    def test_snapshot_is_immutable(self):
        snapshot = self.service.snapshot()
        self.service.set_margin(50)
        assert snapshot.margin_percent == 25
        with pytest.raises(AttributeError):
            snapshot.margin_percent = 50

    def test_exchange_rate_history(self):
        self.service.set_exchange_rate(Decimal("12000"), changed_by="alice")
        self.service.set_exchange_rate(Decimal("15000"), changed_by="bob")

        assert self.service.exchange_rate() == Decimal("15000")
        history = self.service.exchange_rate_history()
        assert [r.set_by for r in history] == ["bob", "alice"]

    def test_invalid_exchange_rate(self):
        with pytest.raises(ValueError):
            self.service.set_exchange_rate(Decimal("-1"))
