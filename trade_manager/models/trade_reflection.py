"""TradeReflection: post-mortem requested from the upstream reasoning layer."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime
from sqlmodel import SQLModel, Field, Column


class TradeReflection(SQLModel, table=True):
    __tablename__ = "trade_reflection"

    id: int | None = Field(default=None, primary_key=True)
    trade_id: str = Field(foreign_key="trade_envelope.trade_id", index=True, unique=True)
    status: str = "requested"  # "requested" or "completed"
    facts: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    # Filled in by the upstream reasoning layer
    thesis_correct: bool | None = None
    timing_correct: bool | None = None
    exit_reason_appropriate: bool | None = None
    what_worked: str | None = None
    what_failed: str | None = None
    lesson_for_next_trade: str | None = None

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
    completed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
