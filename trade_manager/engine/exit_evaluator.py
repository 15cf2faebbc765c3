"""Exit evaluation: decide whether an open envelope must be closed.

Pure and deterministic: no I/O, no clock reads, no mutation. The monitor
persists the returned TrailingUpdate and acts on the ExitDecision.

Rules, first match wins:
    0. preset exit reason (adopted orphans)
    1. liquidation guard
    2. stop loss
    3. take profit
    4. trailing stop
    5. time stop
    6. dust
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from trade_manager.config import TradeManagementSettings
from trade_manager.schemas.envelope import EnvelopeSnapshot, TradeExitReason
from trade_manager.schemas.venue import MarketSnapshot, VenuePosition
from trade_manager.utils.constants import BPS

ONE = Decimal("1")
ZERO = Decimal("0")


@dataclass(frozen=True)
class ExitPolicy:
    dust_min_notional_usd: Decimal = ZERO
    liquidation_guard_distance_bps: Decimal = ZERO
    liquidation_margin_buffer: Decimal | None = None

    @classmethod
    def from_settings(cls, settings: TradeManagementSettings) -> "ExitPolicy":
        return cls(
            dust_min_notional_usd=settings.dust_min_notional_usd,
            liquidation_guard_distance_bps=settings.liquidation_guard_distance_bps,
            liquidation_margin_buffer=settings.liquidation_margin_buffer,
        )


@dataclass(frozen=True)
class ExitDecision:
    reason: TradeExitReason
    exit_price: Decimal


@dataclass(frozen=True)
class TrailingUpdate:
    """New trailing state for an envelope. water_price is side-selected."""
    trailing_activated: bool
    water_price: Decimal


@dataclass(frozen=True)
class ExitEvaluation:
    decision: ExitDecision | None = None
    trailing: TrailingUpdate | None = None


def _enabled(value: Decimal | None) -> bool:
    return value is not None and value > 0


def _direction(envelope: EnvelopeSnapshot) -> Decimal:
    return ONE if envelope.is_long else -ONE


def unrealized_pnl(envelope: EnvelopeSnapshot, price: Decimal) -> Decimal:
    return _direction(envelope) * (price - envelope.entry_price) * envelope.size


def _margin(envelope: EnvelopeSnapshot, position: VenuePosition | None) -> Decimal | None:
    if _enabled(envelope.margin_usd):
        return envelope.margin_usd
    if position is not None and _enabled(position.margin_used_usd):
        return position.margin_used_usd
    if _enabled(envelope.leverage):
        notional = envelope.notional_usd or envelope.entry_price * envelope.size
        return notional / envelope.leverage
    return None


def liquidation_guard_triggered(
    envelope: EnvelopeSnapshot,
    price: Decimal,
    policy: ExitPolicy,
    position: VenuePosition | None = None,
) -> bool:
    pnl = unrealized_pnl(envelope, price)

    # A loss budget triggers on its own; it never masks the heuristics below
    if _enabled(envelope.max_loss_usd) and -pnl >= envelope.max_loss_usd:
        return True

    if _enabled(policy.liquidation_margin_buffer):
        margin = _margin(envelope, position)
        if margin is not None and (margin + pnl) / margin <= policy.liquidation_margin_buffer:
            return True

    if (
        _enabled(policy.liquidation_guard_distance_bps)
        and position is not None
        and _enabled(position.liquidation_price)
    ):
        distance_bps = abs(price - position.liquidation_price) / price * BPS
        if distance_bps <= policy.liquidation_guard_distance_bps:
            return True

    return False


def stop_loss_triggered(envelope: EnvelopeSnapshot, price: Decimal) -> bool:
    sl = envelope.stop_loss_pct
    if not _enabled(sl):
        return False
    if envelope.is_long:
        return price <= envelope.entry_price * (ONE - sl)
    return price >= envelope.entry_price * (ONE + sl)


def take_profit_triggered(envelope: EnvelopeSnapshot, price: Decimal) -> bool:
    tp = envelope.take_profit_pct
    if not _enabled(tp):
        return False
    if envelope.is_long:
        return price >= envelope.entry_price * (ONE + tp)
    return price <= envelope.entry_price * (ONE - tp)


def next_trailing_state(envelope: EnvelopeSnapshot, price: Decimal) -> TrailingUpdate | None:
    """Return the trailing state after observing price, or None if unchanged."""
    if not _enabled(envelope.trailing_stop_pct):
        return None

    water = envelope.water_price
    if not envelope.trailing_activated:
        excursion = _direction(envelope) * (price - envelope.entry_price) / envelope.entry_price
        if excursion >= envelope.trailing_activation_pct:
            return TrailingUpdate(trailing_activated=True, water_price=price)
        return None

    if water is None:
        return TrailingUpdate(trailing_activated=True, water_price=price)
    best = max(water, price) if envelope.is_long else min(water, price)
    if best != water:
        return TrailingUpdate(trailing_activated=True, water_price=best)
    return None


def trailing_stop_triggered(envelope: EnvelopeSnapshot, price: Decimal, water: Decimal) -> bool:
    trail = envelope.trailing_stop_pct
    if envelope.is_long:
        return price <= water * (ONE - trail)
    return price >= water * (ONE + trail)


def time_stop_triggered(envelope: EnvelopeSnapshot, now: datetime) -> bool:
    if envelope.max_hold_seconds > 0:
        if now >= envelope.entered_at + timedelta(seconds=envelope.max_hold_seconds):
            return True
    return envelope.expires_at is not None and now >= envelope.expires_at


def evaluate_exit(
    envelope: EnvelopeSnapshot,
    market: MarketSnapshot,
    now: datetime,
    policy: ExitPolicy,
    position: VenuePosition | None = None,
) -> ExitEvaluation:
    """Evaluate every exit rule for one envelope at one price observation."""
    if not envelope.is_open:
        return ExitEvaluation()

    price = market.price

    if envelope.preset_exit_reason is not None:
        return ExitEvaluation(decision=ExitDecision(envelope.preset_exit_reason, price))

    if liquidation_guard_triggered(envelope, price, policy, position):
        return ExitEvaluation(decision=ExitDecision(TradeExitReason.LIQUIDATION_GUARD, price))

    if stop_loss_triggered(envelope, price):
        return ExitEvaluation(decision=ExitDecision(TradeExitReason.STOP_LOSS, price))

    if take_profit_triggered(envelope, price):
        return ExitEvaluation(decision=ExitDecision(TradeExitReason.TAKE_PROFIT, price))

    trailing = next_trailing_state(envelope, price)
    activated = trailing.trailing_activated if trailing else envelope.trailing_activated
    water = trailing.water_price if trailing else envelope.water_price
    if _enabled(envelope.trailing_stop_pct) and activated and water is not None:
        if trailing_stop_triggered(envelope, price, water):
            return ExitEvaluation(
                decision=ExitDecision(TradeExitReason.TRAILING_STOP, price),
                trailing=trailing,
            )

    if time_stop_triggered(envelope, now):
        return ExitEvaluation(decision=ExitDecision(TradeExitReason.TIME_STOP, price), trailing=trailing)

    if _enabled(policy.dust_min_notional_usd) and envelope.size * price < policy.dust_min_notional_usd:
        return ExitEvaluation(decision=ExitDecision(TradeExitReason.DUST, price), trailing=trailing)

    return ExitEvaluation(trailing=trailing)
