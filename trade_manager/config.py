"""Application configuration via environment variables."""

from decimal import Decimal
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

from trade_manager.exceptions import ConfigurationError

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class PctBounds(BaseModel):
    min: Decimal
    max: Decimal

    @model_validator(mode="after")
    def _validate_order(self):
        if self.min > self.max:
            raise ValueError("min must be <= max")
        return self


class RiskDefaults(BaseModel):
    """Risk parameters applied when an upstream decision omits them.

    Percentages are fractions: 0.03 means 3%.
    """
    stop_loss_pct: Decimal = Field(default=Decimal("0.03"), ge=0)
    take_profit_pct: Decimal = Field(default=Decimal("0.05"), ge=0)
    max_hold_hours: float = Field(default=72.0, gt=0)
    trailing_stop_pct: Decimal | None = Field(default=Decimal("0.02"), ge=0)
    trailing_activation_pct: Decimal = Field(default=Decimal("0.01"), ge=0)


class RiskBounds(BaseModel):
    stop_loss_pct: PctBounds = PctBounds(min=Decimal("0.01"), max=Decimal("0.08"))
    take_profit_pct: PctBounds = PctBounds(min=Decimal("0.02"), max=Decimal("0.15"))
    max_hold_hours: PctBounds = PctBounds(min=Decimal("1"), max=Decimal("168"))
    trailing_stop_pct: PctBounds = PctBounds(min=Decimal("0.005"), max=Decimal("0.05"))
    trailing_activation_pct: PctBounds = PctBounds(min=Decimal("0"), max=Decimal("0.05"))


class CloseExecutionSettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)
    confirm_delay_seconds: float = Field(default=1.0, ge=0)  # venue settlement before re-checking


class TradeManagementSettings(BaseModel):
    enabled: bool = True

    # Polling: idle interval when flat, active interval while any envelope is open
    monitor_interval_seconds: int = Field(default=900, gt=0)
    active_monitor_interval_seconds: int = Field(default=60, gt=0)
    io_timeout_seconds: float = Field(default=10.0, gt=0)
    max_concurrency: int = Field(default=4, ge=1)
    close_retry_min_seconds: int = Field(default=30, ge=0)

    dust_min_notional_usd: Decimal = Field(default=Decimal("0.5"), ge=0)
    liquidation_guard_distance_bps: Decimal = Field(default=Decimal("800"), ge=0)
    liquidation_margin_buffer: Decimal | None = Field(default=Decimal("0.2"), ge=0, lt=1)

    defaults: RiskDefaults = RiskDefaults()
    bounds: RiskBounds = RiskBounds()
    close_execution: CloseExecutionSettings = CloseExecutionSettings()

    @model_validator(mode="after")
    def _validate_intervals(self):
        if self.active_monitor_interval_seconds > self.monitor_interval_seconds:
            raise ValueError(
                "active_monitor_interval_seconds must be <= monitor_interval_seconds"
            )
        if self.close_execution.backoff_max_seconds < self.close_execution.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self


class ExecutionSettings(BaseModel):
    mode: Literal["live", "paper"] = "paper"
    lighter_host: str = "https://mainnet.zklighter.elliot.ai"
    lighter_private_key: str = ""
    api_key_index: int = 3
    account_index: int = 0
    markets: dict[str, int] = {}  # symbol → Lighter market index overrides
    slippage_bps: Decimal = Field(default=Decimal("50"), ge=0)

    @model_validator(mode="after")
    def _validate_live_credentials(self):
        if self.mode == "live" and not self.lighter_private_key:
            raise ValueError("lighter_private_key is required in live mode")
        return self


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'data' / 'trade_manager.db'}"
    log_level: str = "INFO"

    # Telegram (operator alerts only)
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    execution: ExecutionSettings = ExecutionSettings()
    trade_management: TradeManagementSettings = TradeManagementSettings()

    model_config = {"env_prefix": "TM_", "env_file": ".env", "env_nested_delimiter": "__"}


def load_settings(**overrides) -> Settings:
    """Resolve settings once at process start."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
