"""Venue-facing value types: market snapshots, positions, orders and fills."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from trade_manager.schemas.envelope import TradeSide, ensure_utc


def to_decimal(value) -> Decimal | None:
    """Convert venue numbers (floats, ints, strings) without float artefacts."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        result = Decimal(str(value))
    except ArithmeticError:
        return None
    if not result.is_finite():
        return None
    return result


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class MarketSnapshot(_Frozen):
    symbol: str
    price: Decimal = Field(gt=0)
    funding_rate: Decimal | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class VenuePosition(_Frozen):
    symbol: str
    side: TradeSide
    size: Decimal = Field(gt=0)
    entry_price: Decimal | None = None
    mark_price: Decimal | None = None
    position_value_usd: Decimal | None = None
    liquidation_price: Decimal | None = None
    margin_used_usd: Decimal | None = None
    funding_since_open_usd: Decimal | None = None

    @field_validator("symbol")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def notional_usd(self) -> Decimal | None:
        if self.position_value_usd is not None:
            return abs(self.position_value_usd)
        price = self.mark_price or self.entry_price
        return self.size * price if price is not None else None


class VenueOrder(_Frozen):
    order_id: str
    symbol: str
    side: TradeSide
    size: Decimal
    price: Decimal | None = None
    client_order_id: str | None = None
    reduce_only: bool = False
    is_trigger: bool = False

    @field_validator("symbol")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()


class VenueFill(_Frozen):
    symbol: str
    side: TradeSide
    price: Decimal
    size: Decimal
    fee_usd: Decimal = Decimal("0")
    order_id: str | None = None
    client_order_id: str | None = None
    closed_pnl_usd: Decimal | None = None
    is_liquidation: bool = False
    timestamp: datetime

    @field_validator("symbol")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class AccountSnapshot(_Frozen):
    """Venue state fetched once per tick; read-only from the engine's side."""

    positions: tuple[VenuePosition, ...] = ()
    open_orders: tuple[VenueOrder, ...] = ()
    fills: tuple[VenueFill, ...] = ()
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def position_for(self, symbol: str) -> VenuePosition | None:
        symbol = symbol.strip().upper()
        for pos in self.positions:
            if pos.symbol == symbol:
                return pos
        return None


class OrderSpec(_Frozen):
    symbol: str
    side: TradeSide
    size: Decimal = Field(gt=0)
    client_order_id: str
    price: Decimal | None = None  # worst acceptable price for market orders
    reduce_only: bool = True
    order_type: str = "market"


class OrderRef(_Frozen):
    order_id: str
    client_order_id: str
    symbol: str
    filled_price: Decimal | None = None
    filled_size: Decimal | None = None
    status: str | None = None


class VenueOrderRef(_Frozen):
    symbol: str
    order_id: str


class CancelOutcome(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ALREADY_FILLED = "already_filled"


def summarize_fills(fills) -> tuple[Decimal | None, Decimal, Decimal]:
    """Return (size-weighted average price, total size, total fees) for fills."""
    total_size = sum((f.size for f in fills), Decimal("0"))
    fees = sum((f.fee_usd for f in fills), Decimal("0"))
    if total_size <= 0:
        return None, total_size, fees
    notional = sum((f.price * f.size for f in fills), Decimal("0"))
    return notional / total_size, total_size, fees
