"""Immutable envelope and close-record snapshots handed out by the ledger."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class TradeExitReason(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TIME_STOP = "time_stop"
    TRAILING_STOP = "trailing_stop"
    LIQUIDATION_GUARD = "liquidation_guard"
    MANUAL = "manual"
    DUST = "dust"
    ORPHAN_DEFAULT = "orphan_default"


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; treat naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EnvelopeSnapshot(BaseModel):
    """Read-only view of a TradeEnvelope row."""

    model_config = ConfigDict(frozen=True, from_attributes=True, use_enum_values=False)

    trade_id: str
    hypothesis_id: str | None = None
    symbol: str
    side: TradeSide
    status: TradeStatus = TradeStatus.OPEN

    entry_price: Decimal = Field(gt=0)
    size: Decimal = Field(ge=0)
    leverage: Decimal | None = None
    notional_usd: Decimal | None = None
    margin_usd: Decimal | None = None
    entry_cloid: str | None = None
    entry_fees_usd: Decimal | None = None
    entered_at: datetime
    expires_at: datetime | None = None

    stop_loss_pct: Decimal = Decimal("0")
    take_profit_pct: Decimal = Decimal("0")
    max_hold_seconds: int = 0
    trailing_stop_pct: Decimal | None = None
    trailing_activation_pct: Decimal = Decimal("0")
    max_loss_usd: Decimal | None = None
    proposed: dict[str, Any] | None = None

    thesis: str | None = None
    signal_kinds: tuple[str, ...] = ()
    invalidation: str | None = None
    catalyst_id: str | None = None
    narrative_snapshot: str | None = None

    high_water_price: Decimal | None = None
    low_water_price: Decimal | None = None
    trailing_activated: bool = False
    funding_since_open_usd: Decimal | None = None

    close_pending: bool = False
    close_pending_reason: TradeExitReason | None = None
    close_pending_at: datetime | None = None

    tp_oid: str | None = None
    sl_oid: str | None = None

    preset_exit_reason: TradeExitReason | None = None
    needs_review: bool = False

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        text = value.strip().upper()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("entered_at", "expires_at", "close_pending_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def is_long(self) -> bool:
        return self.side == TradeSide.BUY

    @property
    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN

    @property
    def water_price(self) -> Decimal | None:
        """The side-selected extremum: high-water for longs, low-water for shorts."""
        return self.high_water_price if self.is_long else self.low_water_price

    @property
    def protective_oids(self) -> list[str]:
        return [oid for oid in (self.tp_oid, self.sl_oid) if oid]

    def to_row_values(self) -> dict[str, Any]:
        values = self.model_dump(mode="python")
        for key in ("side", "status", "close_pending_reason", "preset_exit_reason"):
            if isinstance(values.get(key), Enum):
                values[key] = values[key].value
        values["signal_kinds"] = list(self.signal_kinds)
        return values


class CloseRecord(BaseModel):
    """Read-only view of a TradeClose row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    trade_id: str
    symbol: str
    exit_price: Decimal
    exit_reason: TradeExitReason
    pnl_usd: Decimal
    pnl_pct: Decimal
    hold_duration_seconds: int
    funding_paid_usd: Decimal = Decimal("0")
    fees_usd: Decimal = Decimal("0")
    close_order_ids: tuple[str, ...] = ()
    closed_at: datetime

    @field_validator("closed_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)
