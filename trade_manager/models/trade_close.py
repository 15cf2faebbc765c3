"""TradeClose: immutable record of a closed trade."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import JSON, DateTime
from sqlmodel import SQLModel, Field, Column

from trade_manager.models.trade_envelope import PRICE_DIGITS, PRICE_PLACES


class TradeClose(SQLModel, table=True):
    __tablename__ = "trade_close"

    trade_id: str = Field(primary_key=True, foreign_key="trade_envelope.trade_id")
    symbol: str = Field(index=True)
    exit_price: Decimal = Field(max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    exit_reason: str  # see schemas.envelope.TradeExitReason
    pnl_usd: Decimal = Field(max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    pnl_pct: Decimal = Field(max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    hold_duration_seconds: int = 0
    funding_paid_usd: Decimal = Field(default=Decimal("0"), max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    fees_usd: Decimal = Field(default=Decimal("0"), max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    close_order_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    closed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_type=DateTime(timezone=True),
        index=True,
    )
