"""Tests for the trade journal summary."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from trade_manager.engine.summary import build_trade_journal_summary, closed_trades_frame
from trade_manager.schemas.envelope import CloseRecord, TradeExitReason


def _close(ledger, make_envelope, trade_id, pnl, reason, signals=(), hours=2, minutes_ago=0):
    ledger.create_envelope(make_envelope(trade_id=trade_id, signal_kinds=signals))
    ledger.finalize_close(
        CloseRecord(
            trade_id=trade_id,
            symbol="BTC",
            exit_price=Decimal("100") + Decimal(pnl),
            exit_reason=reason,
            pnl_usd=Decimal(pnl),
            pnl_pct=Decimal(pnl) / Decimal("100"),
            hold_duration_seconds=hours * 3600,
            closed_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        )
    )


def test_empty_journal(ledger):
    assert build_trade_journal_summary(ledger) == "TRADE JOURNAL SUMMARY (no closed trades yet)"
    assert closed_trades_frame(ledger).empty


def test_summary_statistics(ledger, make_envelope):
    _close(ledger, make_envelope, "t1", "10", TradeExitReason.TAKE_PROFIT, ("funding",), minutes_ago=30)
    _close(ledger, make_envelope, "t2", "-4", TradeExitReason.STOP_LOSS, ("funding", "breakout"), minutes_ago=20)
    _close(ledger, make_envelope, "t3", "6", TradeExitReason.TAKE_PROFIT, ("breakout",), hours=4, minutes_ago=10)

    summary = build_trade_journal_summary(ledger)
    lines = summary.splitlines()

    assert lines[0] == "TRADE JOURNAL SUMMARY (last 3 closed trades):"
    assert "- Win rate: 67% (2/3)" in lines
    assert "- Average win: +$8.00 | Average loss: -$4.00" in lines
    assert "- Average hold: 2.7 hours" in lines
    assert "- Exits: 2 take_profit, 1 stop_loss" in lines
    assert "- Last 5 trades: W L W" in lines
    assert "  - funding: +$3.00 (win 50%, n=2)" in lines
    assert "  - breakout: +$1.00 (win 50%, n=2)" in lines


def test_summary_limit_and_lessons(ledger, make_envelope):
    _close(ledger, make_envelope, "t1", "-2", TradeExitReason.TIME_STOP, minutes_ago=5)
    _close(ledger, make_envelope, "t2", "3", TradeExitReason.TRAILING_STOP, minutes_ago=1)
    ledger.request_reflection("t1", {})
    ledger.record_reflection("t1", lesson_for_next_trade="  Cut losers before the time stop  ")

    summary = build_trade_journal_summary(ledger, limit=1)

    assert summary.startswith("TRADE JOURNAL SUMMARY (last 1 closed trades):")
    assert "- Last 5 trades: W" in summary
    assert "Top signals" not in summary
    assert summary.endswith("- Recent lessons:\n  - Cut losers before the time stop")
