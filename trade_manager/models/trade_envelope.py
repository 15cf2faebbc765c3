"""TradeEnvelope: the live record of one risk-managed position."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, DateTime
from sqlmodel import SQLModel, Field, Column

# Numeric precision for prices, sizes and USD amounts. SQLite stores these as
# floats and rounds to PRICE_PLACES on read, so keep the scale within float range.
PRICE_DIGITS = 28
PRICE_PLACES = 8


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradeEnvelope(SQLModel, table=True):
    __tablename__ = "trade_envelope"

    trade_id: str = Field(primary_key=True)
    hypothesis_id: str | None = None
    symbol: str = Field(index=True)
    side: str  # "buy" (long) or "sell" (short)
    status: str = Field(default="open", index=True)  # "open" or "closed"

    # Entry facts
    entry_price: Decimal = Field(max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    size: Decimal = Field(max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    leverage: Decimal | None = Field(default=None, max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    notional_usd: Decimal | None = Field(default=None, max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    margin_usd: Decimal | None = Field(default=None, max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    entry_cloid: str | None = None
    entry_fees_usd: Decimal | None = Field(default=None, max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    entered_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))
    expires_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))

    # Risk configuration (fractions: 0.03 = 3%)
    stop_loss_pct: Decimal = Field(default=Decimal("0"), max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    take_profit_pct: Decimal = Field(default=Decimal("0"), max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    max_hold_seconds: int = 0
    trailing_stop_pct: Decimal | None = Field(default=None, max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    trailing_activation_pct: Decimal = Field(default=Decimal("0"), max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    max_loss_usd: Decimal | None = Field(default=None, max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    proposed: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    # Narrative context (opaque here)
    thesis: str | None = None
    signal_kinds: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    invalidation: str | None = None
    catalyst_id: str | None = None
    narrative_snapshot: str | None = None

    # Trailing runtime state
    high_water_price: Decimal | None = Field(default=None, max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    low_water_price: Decimal | None = Field(default=None, max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    trailing_activated: bool = False
    funding_since_open_usd: Decimal | None = Field(default=None, max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)

    # Close-intent lock
    close_pending: bool = Field(default=False, index=True)
    close_pending_reason: str | None = None
    close_pending_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))

    # Venue protective orders
    tp_oid: str | None = None
    sl_oid: str | None = None

    preset_exit_reason: str | None = None  # "orphan_default" for adopted orphans
    needs_review: bool = False

    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))
