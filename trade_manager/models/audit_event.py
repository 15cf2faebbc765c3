"""AuditEvent: append-only record of every attempted venue action."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime
from sqlmodel import SQLModel, Field, Column


class AuditEvent(SQLModel, table=True):
    __tablename__ = "audit_event"

    id: int | None = Field(default=None, primary_key=True)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
    trade_id: str | None = Field(default=None, index=True)
    symbol: str | None = None
    action: str  # "submit", "cancel", "close", "reconcile", "tick", ...
    outcome: str  # "success", "rejected", "unknown", "escalated", "mismatch", "error", ...
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
