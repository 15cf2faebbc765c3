"""Tests for the SQL audit sink."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlmodel import Session, SQLModel, select

from trade_manager.engine.audit import SqlAuditSink
from trade_manager.exceptions import PersistenceFailure
from trade_manager.models import AuditEvent


def _events(engine) -> list[AuditEvent]:
    with Session(engine) as session:
        return list(session.exec(select(AuditEvent).order_by(AuditEvent.id)).all())


@pytest.mark.asyncio
async def test_record_writes_event_with_json_details(engine):
    sink = SqlAuditSink(engine)

    await sink.record(
        "submit", "success", trade_id="t1", symbol="BTC",
        details={"size": Decimal("1.5"), "attempt": 1},
    )

    [event] = _events(engine)
    assert event.action == "submit"
    assert event.outcome == "success"
    assert event.trade_id == "t1"
    assert event.message is None
    assert event.details == {"size": "1.5", "attempt": 1}


@pytest.mark.asyncio
async def test_alert_outcomes_notify_operator(engine):
    notifier = AsyncMock()
    sink = SqlAuditSink(engine, notifier=notifier)

    await sink.record("close", "success", trade_id="t1")
    notifier.send_notification.assert_not_called()

    await sink.record("close", "escalated", trade_id="t1", message="Close retries exhausted")
    notifier.send_notification.assert_awaited_once()
    text = notifier.send_notification.call_args.args[0]
    assert text.startswith("[ESCALATED] t1: close")
    assert "Close retries exhausted" in text


@pytest.mark.asyncio
async def test_write_failure_raises_persistence_failure(engine):
    notifier = AsyncMock()
    sink = SqlAuditSink(engine, notifier=notifier)
    SQLModel.metadata.drop_all(engine)

    with pytest.raises(PersistenceFailure):
        await sink.record("reconcile", "mismatch", trade_id="t1")
    notifier.send_notification.assert_not_called()
