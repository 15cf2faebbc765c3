"""TradePriceSample: mid price observed for an envelope on each tick."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field

from trade_manager.models.trade_envelope import PRICE_DIGITS, PRICE_PLACES


class TradePriceSample(SQLModel, table=True):
    __tablename__ = "trade_price_sample"

    id: int | None = Field(default=None, primary_key=True)
    trade_id: str = Field(foreign_key="trade_envelope.trade_id", index=True)
    symbol: str
    mid_price: Decimal = Field(max_digits=PRICE_DIGITS, decimal_places=PRICE_PLACES)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
