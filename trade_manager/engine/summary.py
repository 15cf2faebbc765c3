"""Trade journal summary: a compact text digest of recent closed trades.

Computed with pandas from the ledger's close records and completed reflections.
"""

import logging

import pandas as pd

from trade_manager.engine.ledger import TradeLedger
from trade_manager.utils.constants import SECONDS_PER_HOUR

logger = logging.getLogger(__name__)

MAX_SIGNAL_ROWS = 8
MAX_LESSONS = 5


def _format_usd(value: float) -> str:
    sign = "+" if value >= 0 else "-"
    return f"{sign}${abs(value):.2f}"


def closed_trades_frame(ledger: TradeLedger) -> pd.DataFrame:
    """One row per closed trade, most recent first."""
    rows = [
        {
            "trade_id": env.trade_id,
            "symbol": close.symbol,
            "exit_reason": close.exit_reason.value,
            "pnl_usd": float(close.pnl_usd),
            "hold_seconds": close.hold_duration_seconds,
            "closed_at": close.closed_at,
            "signal_kinds": list(env.signal_kinds),
        }
        for env, close in ledger.list_closed_trades()
    ]
    return pd.DataFrame(
        rows,
        columns=["trade_id", "symbol", "exit_reason", "pnl_usd", "hold_seconds", "closed_at", "signal_kinds"],
    )


def build_trade_journal_summary(ledger: TradeLedger, limit: int = 20) -> str:
    limit = min(max(limit, 1), 200)
    all_closes = closed_trades_frame(ledger)
    if all_closes.empty:
        return "TRADE JOURNAL SUMMARY (no closed trades yet)"

    closes = all_closes.head(limit)
    wins = closes[closes["pnl_usd"] > 0]
    losses = closes[closes["pnl_usd"] <= 0]
    avg_win = wins["pnl_usd"].mean() if not wins.empty else 0.0
    avg_loss = losses["pnl_usd"].mean() if not losses.empty else 0.0
    avg_hold_hours = closes["hold_seconds"].mean() / SECONDS_PER_HOUR

    reason_counts = closes["exit_reason"].value_counts()
    reason_summary = ", ".join(f"{n} {reason}" for reason, n in reason_counts.items())
    last5 = " ".join("W" if pnl > 0 else "L" for pnl in closes["pnl_usd"].head(5))

    lines = [
        f"TRADE JOURNAL SUMMARY (last {len(closes)} closed trades):",
        f"- Win rate: {round(len(wins) / len(closes) * 100)}% ({len(wins)}/{len(closes)})",
        f"- Average win: {_format_usd(avg_win)} | Average loss: {_format_usd(avg_loss)}",
        f"- Average hold: {avg_hold_hours:.1f} hours",
        f"- Exits: {reason_summary or 'n/a'}",
        f"- Last 5 trades: {last5 or 'n/a'}",
    ]

    # Signal effectiveness by kind, across all closed trades
    signals = all_closes[["signal_kinds", "pnl_usd"]].explode("signal_kinds").dropna(subset=["signal_kinds"])
    if not signals.empty:
        stats = (
            signals.assign(win=signals["pnl_usd"] > 0)
            .groupby("signal_kinds")
            .agg(total=("pnl_usd", "size"), wins=("win", "sum"), avg_pnl=("pnl_usd", "mean"))
            .sort_values("avg_pnl", ascending=False)
            .head(MAX_SIGNAL_ROWS)
        )
        lines.append("- Top signals (avg PnL):")
        for kind, row in stats.iterrows():
            win_rate = round(row["wins"] / row["total"] * 100) if row["total"] else 0
            lines.append(
                f"  - {kind}: {_format_usd(row['avg_pnl'])} (win {win_rate}%, n={int(row['total'])})"
            )

    lessons = [
        r.lesson_for_next_trade.strip()
        for r in ledger.list_completed_reflections(limit=MAX_LESSONS)
        if r.lesson_for_next_trade and r.lesson_for_next_trade.strip()
    ]
    if lessons:
        lines.append("- Recent lessons:")
        lines.extend(f"  - {lesson}" for lesson in lessons)

    return "\n".join(lines)
