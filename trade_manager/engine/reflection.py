"""Facts attached to a reflection request after a trade closes.

The upstream reasoning layer turns these into a post-mortem; nothing here
judges the trade.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from trade_manager.schemas.envelope import CloseRecord, EnvelopeSnapshot

PRICE_PATH_POINTS = 20


def excursions(
    envelope: EnvelopeSnapshot, prices: list[Decimal]
) -> tuple[Decimal | None, Decimal | None]:
    """Maximum favourable and adverse excursion as fractions of entry price."""
    if not prices:
        return None, None
    direction = Decimal("1") if envelope.is_long else Decimal("-1")
    moves = [direction * (p - envelope.entry_price) / envelope.entry_price for p in prices]
    return max(moves), min(moves)


def build_reflection_facts(
    envelope: EnvelopeSnapshot,
    close: CloseRecord,
    samples: list[tuple[datetime, Decimal]],
) -> dict[str, Any]:
    prices = [price for _, price in samples] + [close.exit_price]
    mfe, mae = excursions(envelope, prices)
    path = samples[-PRICE_PATH_POINTS:]

    return {
        "trade_id": envelope.trade_id,
        "symbol": envelope.symbol,
        "side": envelope.side.value,
        "entry_price": str(envelope.entry_price),
        "exit_price": str(close.exit_price),
        "size": str(envelope.size),
        "leverage": str(envelope.leverage) if envelope.leverage is not None else None,
        "exit_reason": close.exit_reason.value,
        "pnl_usd": str(close.pnl_usd),
        "pnl_pct": str(close.pnl_pct),
        "hold_duration_seconds": close.hold_duration_seconds,
        "fees_usd": str(close.fees_usd),
        "funding_paid_usd": str(close.funding_paid_usd),
        "risk": {
            "stop_loss_pct": str(envelope.stop_loss_pct),
            "take_profit_pct": str(envelope.take_profit_pct),
            "max_hold_seconds": envelope.max_hold_seconds,
            "trailing_stop_pct": (
                str(envelope.trailing_stop_pct) if envelope.trailing_stop_pct is not None else None
            ),
            "trailing_activation_pct": str(envelope.trailing_activation_pct),
            "trailing_activated": envelope.trailing_activated,
            "proposed": envelope.proposed,
        },
        "max_favorable_excursion_pct": str(mfe) if mfe is not None else None,
        "max_adverse_excursion_pct": str(mae) if mae is not None else None,
        "price_path": [[ts.isoformat(), str(price)] for ts, price in path],
        "thesis": envelope.thesis,
        "signal_kinds": list(envelope.signal_kinds),
        "invalidation": envelope.invalidation,
        "needs_review": envelope.needs_review,
    }
