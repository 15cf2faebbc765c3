"""Paper venue: an in-memory ExecutionAdapter for execution.mode = "paper".

Market orders fill immediately and completely at the current market snapshot
price. Positions net per symbol.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from itertools import count

from trade_manager.engine.interfaces import MarketClient
from trade_manager.exceptions import OrderRejected
from trade_manager.schemas.envelope import TradeSide
from trade_manager.schemas.venue import (
    CancelOutcome,
    OrderRef,
    OrderSpec,
    VenueFill,
    VenueOrder,
    VenueOrderRef,
    VenuePosition,
)
from trade_manager.utils.constants import BPS

logger = logging.getLogger(__name__)


class PaperVenue:
    def __init__(self, market: MarketClient, fee_bps: Decimal = Decimal("0")):
        self.market = market
        self.fee_bps = fee_bps
        self._positions: dict[str, VenuePosition] = {}
        self._resting: dict[str, VenueOrder] = {}
        self._fills: list[VenueFill] = []
        self._order_seq = count(1)

    def _next_order_id(self) -> str:
        return f"paper-{next(self._order_seq)}"

    def _apply_fill(self, symbol: str, side: TradeSide, size: Decimal, price: Decimal):
        current = self._positions.get(symbol)
        signed = size if side == TradeSide.BUY else -size
        if current is None:
            net, entry = signed, price
        else:
            held = current.size if current.side == TradeSide.BUY else -current.size
            net = held + signed
            if held * signed > 0:
                entry = (current.entry_price * abs(held) + price * size) / abs(net)
            elif held * net < 0:
                entry = price  # flipped through zero
            else:
                entry = current.entry_price

        if net == 0:
            self._positions.pop(symbol, None)
            return
        self._positions[symbol] = VenuePosition(
            symbol=symbol,
            side=TradeSide.BUY if net > 0 else TradeSide.SELL,
            size=abs(net),
            entry_price=entry,
            mark_price=price,
        )

    def open_position(self, symbol: str, side: TradeSide, size: Decimal, price: Decimal):
        """Seed a position directly, as an entry filled at ``price``."""
        self._apply_fill(symbol.upper(), TradeSide(side), size, price)

    def add_resting_order(self, order: VenueOrder):
        """Register a resting (e.g. protective trigger) order."""
        self._resting[order.order_id] = order

    async def place_order(self, spec: OrderSpec) -> OrderRef:
        symbol = spec.symbol.upper()
        position = self._positions.get(symbol)
        size = spec.size
        if spec.reduce_only:
            if position is None or position.side == spec.side:
                raise OrderRejected("Reduce-only order would increase position", symbol=symbol)
            size = min(size, position.size)

        snapshot = await self.market.get_snapshot(symbol)
        price = snapshot.price
        order_id = self._next_order_id()
        self._apply_fill(symbol, spec.side, size, price)
        self._fills.append(
            VenueFill(
                symbol=symbol,
                side=spec.side,
                price=price,
                size=size,
                fee_usd=price * size * self.fee_bps / BPS,
                order_id=order_id,
                client_order_id=spec.client_order_id,
                timestamp=datetime.now(timezone.utc),
            )
        )
        logger.info(f"PAPER {spec.side.value} {size} {symbol} @ {price} ({spec.client_order_id})")
        return OrderRef(
            order_id=order_id,
            client_order_id=spec.client_order_id,
            symbol=symbol,
            filled_price=price,
            filled_size=size,
            status="filled",
        )

    async def cancel_order(self, ref: VenueOrderRef) -> CancelOutcome:
        if self._resting.pop(ref.order_id, None) is not None:
            return CancelOutcome.CONFIRMED
        if any(f.order_id == ref.order_id for f in self._fills):
            return CancelOutcome.ALREADY_FILLED
        return CancelOutcome.FAILED

    async def get_open_positions(self) -> list[VenuePosition]:
        return list(self._positions.values())

    async def get_open_orders(self) -> list[VenueOrder]:
        return list(self._resting.values())

    async def get_fills(self, since: datetime | None = None) -> list[VenueFill]:
        return [f for f in self._fills if since is None or f.timestamp >= since]
