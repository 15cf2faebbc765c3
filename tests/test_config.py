"""Tests for settings validation and environment loading."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from trade_manager.config import (
    CloseExecutionSettings,
    ExecutionSettings,
    PctBounds,
    Settings,
    TradeManagementSettings,
    load_settings,
)
from trade_manager.exceptions import ConfigurationError


def test_trade_management_defaults():
    tm = TradeManagementSettings()
    assert tm.enabled is True
    assert tm.monitor_interval_seconds == 900
    assert tm.active_monitor_interval_seconds == 60
    assert tm.close_retry_min_seconds == 30
    assert tm.dust_min_notional_usd == Decimal("0.5")
    assert tm.close_execution.max_attempts == 3


def test_inverted_bounds_rejected():
    with pytest.raises(ValidationError):
        PctBounds(min=Decimal("0.1"), max=Decimal("0.01"))


def test_active_interval_must_not_exceed_base():
    with pytest.raises(ValidationError):
        TradeManagementSettings(monitor_interval_seconds=30, active_monitor_interval_seconds=60)


def test_non_positive_interval_rejected():
    with pytest.raises(ValidationError):
        TradeManagementSettings(monitor_interval_seconds=0)


def test_max_attempts_at_least_one():
    with pytest.raises(ValidationError):
        CloseExecutionSettings(max_attempts=0)


def test_live_mode_requires_private_key():
    with pytest.raises(ValidationError):
        ExecutionSettings(mode="live")
    assert ExecutionSettings(mode="live", lighter_private_key="0xabc").mode == "live"


def test_nested_env_vars(monkeypatch):
    monkeypatch.setenv("TM_TRADE_MANAGEMENT__ENABLED", "false")
    monkeypatch.setenv("TM_TRADE_MANAGEMENT__MAX_CONCURRENCY", "8")
    monkeypatch.setenv("TM_EXECUTION__SLIPPAGE_BPS", "25")
    settings = Settings(_env_file=None)
    assert settings.trade_management.enabled is False
    assert settings.trade_management.max_concurrency == 8
    assert settings.execution.slippage_bps == Decimal("25")


def test_load_settings_wraps_validation_errors(monkeypatch):
    monkeypatch.setenv("TM_EXECUTION__MODE", "live")
    with pytest.raises(ConfigurationError):
        load_settings(_env_file=None)
