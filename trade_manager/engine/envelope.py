"""Build a new TradeEnvelope from an upstream entry decision.

Risk parameters the decision omits fall back to configured defaults; every
parameter is clamped to the configured bounds. When clamping changes anything
the unclamped values are kept in ``proposed`` for later review. They are never
applied automatically.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable

from trade_manager.config import PctBounds, TradeManagementSettings
from trade_manager.schemas.envelope import EnvelopeSnapshot, TradeSide
from trade_manager.utils.constants import SECONDS_PER_HOUR

_DEFAULT = object()


def _clamp(value: Decimal, bounds: PctBounds) -> Decimal:
    return min(bounds.max, max(bounds.min, value))


def _decimal(value) -> Decimal | None:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def normalize_symbol(symbol: str) -> str:
    """'btc/usdc' -> 'BTC'."""
    base = symbol.split("/")[0] if "/" in symbol else symbol
    return base.strip().upper()


def build_trade_envelope(
    settings: TradeManagementSettings,
    *,
    trade_id: str,
    symbol: str,
    side: TradeSide | str,
    entry_price,
    size,
    notional_usd=None,
    leverage=None,
    stop_loss_pct=None,
    take_profit_pct=None,
    max_hold_seconds: int | None = None,
    trailing_stop_pct=_DEFAULT,
    trailing_activation_pct=None,
    hypothesis_id: str | None = None,
    thesis: str | None = None,
    signal_kinds: Iterable[str] = (),
    invalidation: str | None = None,
    catalyst_id: str | None = None,
    narrative_snapshot: str | None = None,
    entry_cloid: str | None = None,
    entry_fees_usd=None,
    max_loss_usd=None,
    now: datetime | None = None,
) -> EnvelopeSnapshot:
    """Return an open EnvelopeSnapshot ready for TradeLedger.create_envelope.

    Pass ``trailing_stop_pct=None`` to disable trailing explicitly; leaving it
    out applies the configured default. ``max_loss_usd`` is a hard loss budget
    for the liquidation guard and is only set when the caller supplies one.
    """
    defaults = settings.defaults
    bounds = settings.bounds
    now = now or datetime.now(timezone.utc)

    entry_price = _decimal(entry_price)
    size = _decimal(size)
    notional = _decimal(notional_usd)
    if notional is None:
        notional = entry_price * size

    proposed_sl = _decimal(stop_loss_pct) if stop_loss_pct is not None else defaults.stop_loss_pct
    proposed_tp = _decimal(take_profit_pct) if take_profit_pct is not None else defaults.take_profit_pct
    proposed_hold = (
        int(max_hold_seconds)
        if max_hold_seconds is not None
        else int(round(defaults.max_hold_hours * SECONDS_PER_HOUR))
    )
    if trailing_stop_pct is _DEFAULT:
        proposed_trail = defaults.trailing_stop_pct
    else:
        proposed_trail = _decimal(trailing_stop_pct)
    proposed_activation = (
        _decimal(trailing_activation_pct)
        if trailing_activation_pct is not None
        else defaults.trailing_activation_pct
    )

    applied_sl = _clamp(proposed_sl, bounds.stop_loss_pct)
    applied_tp = _clamp(proposed_tp, bounds.take_profit_pct)
    hold_bounds = PctBounds(
        min=bounds.max_hold_hours.min * SECONDS_PER_HOUR,
        max=bounds.max_hold_hours.max * SECONDS_PER_HOUR,
    )
    applied_hold = int(_clamp(Decimal(proposed_hold), hold_bounds))
    applied_trail = None if proposed_trail is None else _clamp(proposed_trail, bounds.trailing_stop_pct)
    applied_activation = _clamp(proposed_activation, bounds.trailing_activation_pct)

    clamped = (
        proposed_sl != applied_sl
        or proposed_tp != applied_tp
        or proposed_hold != applied_hold
        or proposed_trail != applied_trail
        or proposed_activation != applied_activation
    )
    proposed = None
    if clamped:
        # JSON column: keep decimals as strings
        proposed = {
            "stop_loss_pct": str(proposed_sl),
            "take_profit_pct": str(proposed_tp),
            "max_hold_seconds": proposed_hold,
            "trailing_stop_pct": None if proposed_trail is None else str(proposed_trail),
            "trailing_activation_pct": str(proposed_activation),
        }

    lev = _decimal(leverage)
    if lev is not None and lev <= 0:
        lev = None
    margin = notional / lev if lev is not None else None

    return EnvelopeSnapshot(
        trade_id=trade_id,
        hypothesis_id=hypothesis_id,
        symbol=normalize_symbol(symbol),
        side=TradeSide(side),
        entry_price=entry_price,
        size=size,
        leverage=lev,
        notional_usd=notional,
        margin_usd=margin,
        entry_cloid=entry_cloid,
        entry_fees_usd=_decimal(entry_fees_usd),
        entered_at=now,
        expires_at=now + timedelta(seconds=applied_hold),
        stop_loss_pct=applied_sl,
        take_profit_pct=applied_tp,
        max_hold_seconds=applied_hold,
        trailing_stop_pct=applied_trail,
        trailing_activation_pct=applied_activation,
        max_loss_usd=_decimal(max_loss_usd),
        proposed=proposed,
        thesis=thesis,
        signal_kinds=tuple(str(k) for k in signal_kinds),
        invalidation=invalidation,
        catalyst_id=catalyst_id,
        narrative_snapshot=narrative_snapshot,
    )
