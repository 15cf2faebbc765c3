"""Audit sink: append-only AuditEvent rows, with operator alerts for the serious outcomes."""

import logging
from typing import Any

from pydantic_core import to_jsonable_python
from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from trade_manager.exceptions import PersistenceFailure
from trade_manager.models import AuditEvent
from trade_manager.services.notifier import TelegramNotifier

logger = logging.getLogger(__name__)

# Outcomes that need a human
ALERT_OUTCOMES = frozenset({"escalated", "mismatch"})


class SqlAuditSink:
    def __init__(self, engine: Engine, notifier: TelegramNotifier | None = None):
        self.engine = engine
        self.notifier = notifier

    async def record(
        self,
        action: str,
        outcome: str,
        *,
        trade_id: str | None = None,
        symbol: str | None = None,
        message: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        event = AuditEvent(
            trade_id=trade_id,
            symbol=symbol,
            action=action,
            outcome=outcome,
            message=message or None,
            details=to_jsonable_python(details) if details else None,
        )
        try:
            with Session(self.engine) as session:
                session.add(event)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"[{trade_id or symbol or 'audit'}] Failed to write audit event {action}/{outcome}: {e}")
            raise PersistenceFailure(str(e), symbol=symbol, trade_id=trade_id) from e

        if outcome in ALERT_OUTCOMES and self.notifier is not None:
            subject = trade_id or symbol or "trade manager"
            await self.notifier.send_notification(f"[{outcome.upper()}] {subject}: {action}\n{message}")
