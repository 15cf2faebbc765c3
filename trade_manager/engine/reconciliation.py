"""Reconciliation guard: compare the ledger's open envelopes against venue state.

Produces actions only; the monitor applies them through the ledger.

Scenarios handled:
1. Venue position with no open envelope for its symbol -> adopt as orphan
2. Open envelope with no venue position -> force close, flagged for review
3. Venue position on the opposite side of the envelope -> flag conflict
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Mapping

from trade_manager.schemas.envelope import EnvelopeSnapshot, TradeExitReason, TradeSide
from trade_manager.schemas.venue import AccountSnapshot, VenueFill, VenuePosition, summarize_fills

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdoptOrphan:
    envelope: EnvelopeSnapshot


@dataclass(frozen=True)
class ForceClose:
    trade_id: str
    symbol: str
    reason: TradeExitReason
    exit_price: Decimal | None = None
    needs_review: bool = True
    fills: tuple[VenueFill, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class FlagConflict:
    trade_id: str
    symbol: str
    envelope_side: TradeSide
    venue_side: TradeSide
    venue_size: Decimal


ReconciliationAction = AdoptOrphan | ForceClose | FlagConflict


def orphan_trade_id(symbol: str, now: datetime) -> str:
    return f"orphan_{symbol.upper()}_{int(now.timestamp())}"


def closing_side(side: TradeSide) -> TradeSide:
    return TradeSide.SELL if side == TradeSide.BUY else TradeSide.BUY


def closing_fills(envelope: EnvelopeSnapshot, fills) -> list[VenueFill]:
    """Fills on the envelope's symbol that reduce its side since entry."""
    exit_side = closing_side(envelope.side)
    return [
        f for f in fills
        if f.symbol == envelope.symbol and f.side == exit_side and f.timestamp >= envelope.entered_at
    ]


def classify_disappearance(
    envelope: EnvelopeSnapshot, fills
) -> tuple[TradeExitReason, list[VenueFill]]:
    """Explain why a position vanished from the venue, from its fill history."""
    candidates = closing_fills(envelope, fills)

    liquidations = [f for f in candidates if f.is_liquidation]
    if liquidations:
        return TradeExitReason.LIQUIDATION_GUARD, liquidations

    if envelope.tp_oid:
        tp_fills = [f for f in candidates if f.order_id == envelope.tp_oid]
        if tp_fills:
            return TradeExitReason.TAKE_PROFIT, tp_fills
    if envelope.sl_oid:
        sl_fills = [f for f in candidates if f.order_id == envelope.sl_oid]
        if sl_fills:
            return TradeExitReason.STOP_LOSS, sl_fills

    return TradeExitReason.MANUAL, candidates


def orphan_entry_price(position: VenuePosition, market_price: Decimal | None = None) -> Decimal | None:
    """Best available entry price: venue entry, then mark, then position value, then market."""
    for price in (position.entry_price, position.mark_price):
        if price is not None and price > 0:
            return price
    if position.position_value_usd:
        return abs(position.position_value_usd) / position.size
    if market_price is not None and market_price > 0:
        return market_price
    return None


def build_orphan_envelope(
    position: VenuePosition, now: datetime, market_price: Decimal | None = None
) -> EnvelopeSnapshot | None:
    entry_price = orphan_entry_price(position, market_price)
    if entry_price is None:
        return None
    return EnvelopeSnapshot(
        trade_id=orphan_trade_id(position.symbol, now),
        symbol=position.symbol,
        side=position.side,
        entry_price=entry_price,
        size=position.size,
        notional_usd=position.notional_usd,
        margin_usd=position.margin_used_usd,
        entered_at=now,
        funding_since_open_usd=position.funding_since_open_usd,
        preset_exit_reason=TradeExitReason.ORPHAN_DEFAULT,
        thesis="Adopted venue position with no ledger record",
    )


class ReconciliationGuard:
    def __init__(self, dust_min_notional_usd: Decimal = Decimal("0")):
        # Dust orphans are adopted like any other; the threshold only affects logging
        self.dust_min_notional_usd = dust_min_notional_usd

    def _is_dust(self, position: VenuePosition) -> bool:
        notional = position.notional_usd
        return (
            self.dust_min_notional_usd > 0
            and notional is not None
            and notional <= self.dust_min_notional_usd
        )

    @staticmethod
    def unpriced_orphans(account: AccountSnapshot, envelopes: list[EnvelopeSnapshot]) -> list[str]:
        """Symbols of untracked positions that need a market price to be adopted."""
        tracked = {e.symbol for e in envelopes if e.is_open}
        symbols: list[str] = []
        for position in account.positions:
            if position.symbol in tracked or position.symbol in symbols:
                continue
            if orphan_entry_price(position) is None:
                symbols.append(position.symbol)
        return symbols

    def reconcile(
        self,
        account: AccountSnapshot,
        envelopes: list[EnvelopeSnapshot],
        now: datetime,
        market_prices: Mapping[str, Decimal] | None = None,
    ) -> list[ReconciliationAction]:
        """Return the actions that bring the ledger in line with the venue.

        ``market_prices`` prices untracked positions the venue reports without
        an entry or mark price.
        """
        market_prices = market_prices or {}
        actions: list[ReconciliationAction] = []
        open_envelopes = [e for e in envelopes if e.is_open]
        tracked_symbols = {e.symbol for e in open_envelopes}

        for env in open_envelopes:
            position = account.position_for(env.symbol)
            if position is None:
                if env.close_pending:
                    # The close coordinator's resume path owns this one
                    continue
                reason, fills = classify_disappearance(env, account.fills)
                exit_price, _, _ = summarize_fills(fills)
                logger.warning(
                    f"[{env.trade_id}] {env.symbol} has no venue position; "
                    f"force closing as {reason.value}"
                )
                actions.append(
                    ForceClose(
                        trade_id=env.trade_id,
                        symbol=env.symbol,
                        reason=reason,
                        exit_price=exit_price,
                        fills=tuple(fills),
                    )
                )
            elif position.side != env.side:
                logger.warning(
                    f"[{env.trade_id}] {env.symbol} side mismatch: ledger={env.side.value} "
                    f"venue={position.side.value}"
                )
                actions.append(
                    FlagConflict(
                        trade_id=env.trade_id,
                        symbol=env.symbol,
                        envelope_side=env.side,
                        venue_side=position.side,
                        venue_size=position.size,
                    )
                )

        adopted: set[str] = set()
        for position in account.positions:
            if position.symbol in tracked_symbols or position.symbol in adopted:
                continue
            orphan = build_orphan_envelope(position, now, market_prices.get(position.symbol))
            if orphan is None:
                logger.error(
                    f"[{position.symbol}] Untracked venue position has no price from venue or market; "
                    f"adoption retried next tick"
                )
                continue
            if self._is_dust(position):
                logger.info(
                    f"[{position.symbol}] Untracked position is dust (size={position.size}); adopting to close it"
                )
            adopted.add(position.symbol)
            logger.warning(
                f"[{position.symbol}] Untracked venue position ({position.side.value}, size={position.size}); "
                f"adopting as {orphan.trade_id}"
            )
            actions.append(AdoptOrphan(envelope=orphan))

        return actions
