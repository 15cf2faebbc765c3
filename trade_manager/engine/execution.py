"""Execution coordinator: drive a requested exit to a confirmed close.

The caller must already hold the envelope's close_pending lock. Steps:
1. Reconcile: if the venue position is already gone, finalise from fills.
2. Cancel protective orders (tp/sl). A protective order that already filled
   is the close event.
3. Market-close the remaining venue size, reduce-only, slippage bounded,
   with an idempotency key derived from the entry and the attempt.
4. Confirm against the venue; retry with backoff; escalate when exhausted.
5. Finalise: one close record, envelope closed, reflection requested.
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal

from trade_manager.config import TradeManagementSettings
from trade_manager.engine.interfaces import AuditSink, ExecutionAdapter, MarketClient
from trade_manager.engine.ledger import TradeLedger
from trade_manager.engine.reconciliation import classify_disappearance, closing_side
from trade_manager.engine.reflection import build_reflection_facts
from trade_manager.exceptions import (
    CloseEscalated,
    MarketDataUnavailable,
    OrderOutcomeUnknown,
    OrderRejected,
    TradeManagementError,
)
from trade_manager.schemas.envelope import CloseRecord, EnvelopeSnapshot, TradeExitReason, TradeSide
from trade_manager.schemas.venue import (
    CancelOutcome,
    OrderSpec,
    VenueFill,
    VenueOrderRef,
    VenuePosition,
    summarize_fills,
)
from trade_manager.utils.constants import BPS

logger = logging.getLogger(__name__)


def close_key_prefix(envelope: EnvelopeSnapshot) -> str:
    return f"{envelope.entry_cloid or envelope.trade_id}:x:"


def close_client_order_id(envelope: EnvelopeSnapshot, reason: TradeExitReason, attempt: int) -> str:
    """Deterministic idempotency key for one close attempt."""
    return f"{close_key_prefix(envelope)}{TradeExitReason(reason).value}:{attempt}"


def compute_pnl(
    envelope: EnvelopeSnapshot, exit_price: Decimal, fees: Decimal, funding: Decimal
) -> tuple[Decimal, Decimal]:
    direction = Decimal("1") if envelope.is_long else Decimal("-1")
    move = exit_price - envelope.entry_price
    pnl_usd = direction * move * envelope.size - fees - funding
    pnl_pct = direction * move / envelope.entry_price
    return pnl_usd, pnl_pct


class ExecutionCoordinator:
    def __init__(
        self,
        ledger: TradeLedger,
        adapter: ExecutionAdapter,
        market: MarketClient,
        audit: AuditSink,
        settings: TradeManagementSettings,
        slippage_bps: Decimal = Decimal("50"),
    ):
        self.ledger = ledger
        self.adapter = adapter
        self.market = market
        self.audit = audit
        self.settings = settings
        self.slippage_bps = slippage_bps

    # ------------------------------------------------------------------
    # Venue I/O
    # ------------------------------------------------------------------

    async def _io(self, coro):
        return await asyncio.wait_for(coro, timeout=self.settings.io_timeout_seconds)

    async def _position(self, symbol: str) -> VenuePosition | None:
        try:
            positions = await self._io(self.adapter.get_open_positions())
        except asyncio.TimeoutError as e:
            raise TradeManagementError("Timed out reading venue positions", symbol=symbol) from e
        for pos in positions:
            if pos.symbol == symbol:
                return pos
        return None

    async def _fills(self, envelope: EnvelopeSnapshot) -> list[VenueFill]:
        try:
            return await self._io(self.adapter.get_fills(since=envelope.entered_at))
        except asyncio.TimeoutError:
            logger.warning(f"[{envelope.trade_id}] Timed out reading fills; finalising without them")
            return []

    async def _market_price(self, symbol: str) -> Decimal | None:
        try:
            snapshot = await self._io(self.market.get_snapshot(symbol))
        except (MarketDataUnavailable, asyncio.TimeoutError) as e:
            logger.warning(f"[{symbol}] No market price available: {e}")
            return None
        return snapshot.price

    async def _cancel(self, symbol: str, oid: str) -> CancelOutcome:
        try:
            return await self._io(self.adapter.cancel_order(VenueOrderRef(symbol=symbol, order_id=oid)))
        except (OrderRejected, asyncio.TimeoutError) as e:
            logger.warning(f"[{symbol}] Cancel of {oid} failed: {e}")
            return CancelOutcome.FAILED

    async def _has_resting_order(self, symbol: str, client_order_id: str) -> bool:
        try:
            orders = await self._io(self.adapter.get_open_orders())
        except asyncio.TimeoutError as e:
            raise OrderOutcomeUnknown(
                "Timed out reading open orders", symbol=symbol
            ) from e
        return any(o.client_order_id == client_order_id for o in orders)

    def _is_dust(self, position: VenuePosition) -> bool:
        threshold = self.settings.dust_min_notional_usd
        notional = position.notional_usd
        return threshold > 0 and notional is not None and notional <= threshold

    async def _backoff(self, attempt: int):
        cfg = self.settings.close_execution
        delay = min(cfg.backoff_base_seconds * 2 ** (attempt - 1), cfg.backoff_max_seconds)
        if delay > 0:
            await asyncio.sleep(delay)

    def _worst_price(self, side: TradeSide, reference: Decimal) -> Decimal:
        slip = self.slippage_bps / BPS
        if side == TradeSide.SELL:
            return reference * (Decimal("1") - slip)
        return reference * (Decimal("1") + slip)

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    async def close(
        self,
        envelope: EnvelopeSnapshot,
        reason: TradeExitReason,
        exit_price_hint: Decimal | None = None,
    ) -> CloseRecord:
        reason = TradeExitReason(reason)
        tid = envelope.trade_id
        symbol = envelope.symbol
        order_ids: list[str] = []
        logger.info(f"[{tid}] Closing {symbol} ({reason.value})")

        position = await self._position(symbol)
        if position is None:
            logger.info(f"[{tid}] {symbol} already flat on venue; reconciling from fills")
            return await self._finalize_from_fills(envelope, reason, exit_price_hint, order_ids, None)

        filled = await self._cancel_protective_orders(envelope, exit_price_hint, position)
        if filled is not None:
            return filled

        cfg = self.settings.close_execution
        exit_side = closing_side(envelope.side)
        client_order_id: str | None = None
        last_error: Exception | None = None

        for attempt in range(1, cfg.max_attempts + 1):
            if attempt > 1:
                await self._backoff(attempt - 1)
                position = await self._position(symbol)
                if position is None:
                    return await self._finalize_from_fills(
                        envelope, reason, exit_price_hint, order_ids, None
                    )

            if order_ids and self._is_dust(position):
                return await self._finalize_from_fills(
                    envelope, TradeExitReason.DUST, exit_price_hint, order_ids, position
                )
            # Adopted orphans always get a close order, dust or not
            if not order_ids and self._is_dust(position) and envelope.preset_exit_reason is None:
                logger.info(f"[{tid}] Remaining {symbol} position is dust; not submitting")
                return await self._finalize_from_fills(
                    envelope, reason, exit_price_hint, order_ids, position
                )

            # A fresh key unless the previous attempt's outcome is unknown
            if client_order_id is None:
                client_order_id = close_client_order_id(envelope, reason, attempt)

            if await self._has_resting_order(symbol, client_order_id):
                logger.info(f"[{tid}] Close order {client_order_id} already resting; not resubmitting")
            else:
                reference = exit_price_hint or position.mark_price or await self._market_price(symbol)
                spec = OrderSpec(
                    symbol=symbol,
                    side=exit_side,
                    size=position.size,
                    client_order_id=client_order_id,
                    price=self._worst_price(exit_side, reference) if reference else None,
                    reduce_only=True,
                )
                try:
                    ref = await self._io(self.adapter.place_order(spec))
                except OrderRejected as e:
                    last_error = e
                    logger.warning(f"[{tid}] Close attempt {attempt} rejected: {e}")
                    await self.audit.record(
                        "submit", "rejected", trade_id=tid, symbol=symbol,
                        message=str(e), details={"client_order_id": client_order_id, "attempt": attempt},
                    )
                    client_order_id = None
                    continue
                except (OrderOutcomeUnknown, asyncio.TimeoutError) as e:
                    last_error = e
                    if client_order_id not in order_ids:
                        order_ids.append(client_order_id)
                    logger.warning(f"[{tid}] Close attempt {attempt} outcome unknown; reconciling before retry")
                    await self.audit.record(
                        "submit", "unknown", trade_id=tid, symbol=symbol,
                        message=str(e) or "timeout",
                        details={"client_order_id": client_order_id, "attempt": attempt},
                    )
                    continue

                if client_order_id not in order_ids:
                    order_ids.append(client_order_id)
                await self.audit.record(
                    "submit", "success", trade_id=tid, symbol=symbol,
                    details={
                        "client_order_id": client_order_id,
                        "order_id": ref.order_id,
                        "size": position.size,
                        "attempt": attempt,
                    },
                )

            if cfg.confirm_delay_seconds > 0:
                await asyncio.sleep(cfg.confirm_delay_seconds)

            position = await self._position(symbol)
            if position is None:
                return await self._finalize_from_fills(envelope, reason, exit_price_hint, order_ids, None)
            if self._is_dust(position):
                return await self._finalize_from_fills(
                    envelope, TradeExitReason.DUST, exit_price_hint, order_ids, position
                )
            logger.warning(f"[{tid}] {symbol} still open after attempt {attempt} (size={position.size})")
            client_order_id = None

        # One last look: an unknown-outcome order may have filled meanwhile
        position = await self._position(symbol)
        if position is None:
            return await self._finalize_from_fills(envelope, reason, exit_price_hint, order_ids, None)

        await self._escalate(envelope, f"Close retries exhausted: {last_error or 'position still open'}")

    async def _cancel_protective_orders(
        self,
        envelope: EnvelopeSnapshot,
        exit_price_hint: Decimal | None,
        position: VenuePosition | None,
    ) -> CloseRecord | None:
        """Cancel tp/sl orders. Returns a close record if one of them already filled."""
        tid = envelope.trade_id
        symbol = envelope.symbol
        protective = (
            (envelope.tp_oid, TradeExitReason.TAKE_PROFIT, envelope.sl_oid),
            (envelope.sl_oid, TradeExitReason.STOP_LOSS, envelope.tp_oid),
        )
        for oid, filled_reason, sibling in protective:
            if not oid:
                continue
            for attempt in range(1, self.settings.close_execution.max_attempts + 1):
                if attempt > 1:
                    await self._backoff(attempt - 1)
                outcome = await self._cancel(symbol, oid)
                await self.audit.record(
                    "cancel", outcome.value, trade_id=tid, symbol=symbol,
                    details={"order_id": oid, "attempt": attempt},
                )
                if outcome == CancelOutcome.CONFIRMED:
                    self.ledger.clear_protective_order(tid, oid)
                    break
                if outcome == CancelOutcome.ALREADY_FILLED:
                    logger.info(f"[{tid}] Protective order {oid} already filled ({filled_reason.value})")
                    if sibling and await self._cancel(symbol, sibling) == CancelOutcome.CONFIRMED:
                        self.ledger.clear_protective_order(tid, sibling)
                    fills = [f for f in await self._fills(envelope) if f.order_id == oid]
                    return await self._finalize(
                        envelope, filled_reason, exit_price_hint, fills, [], position
                    )
            else:
                await self._escalate(envelope, f"Could not cancel protective order {oid}")
        return None

    async def _escalate(self, envelope: EnvelopeSnapshot, message: str):
        tid = envelope.trade_id
        self.ledger.touch_close_pending(tid)
        logger.error(f"[{tid}] Close escalated: {message}")
        await self.audit.record(
            "close", "escalated", trade_id=tid, symbol=envelope.symbol, message=message,
        )
        raise CloseEscalated(message, symbol=envelope.symbol, trade_id=tid)

    # ------------------------------------------------------------------
    # Finalisation
    # ------------------------------------------------------------------

    async def _finalize_from_fills(
        self,
        envelope: EnvelopeSnapshot,
        reason: TradeExitReason,
        exit_price_hint: Decimal | None,
        order_ids: list[str],
        position: VenuePosition | None,
    ) -> CloseRecord:
        fills = await self._fills(envelope)
        prefix = close_key_prefix(envelope)
        ours = [f for f in fills if f.client_order_id and f.client_order_id.startswith(prefix)]
        if not ours:
            # Not closed by us: a protective order or liquidation may explain it
            venue_reason, ours = classify_disappearance(envelope, fills)
            if venue_reason != TradeExitReason.MANUAL:
                reason = venue_reason
        return await self._finalize(envelope, reason, exit_price_hint, ours, order_ids, position)

    async def _finalize(
        self,
        envelope: EnvelopeSnapshot,
        reason: TradeExitReason,
        exit_price_hint: Decimal | None,
        fills: list[VenueFill],
        order_ids: list[str],
        position: VenuePosition | None,
        *,
        needs_review: bool = False,
    ) -> CloseRecord:
        tid = envelope.trade_id
        now = datetime.now(timezone.utc)

        fill_price, _, exit_fees = summarize_fills(fills)
        exit_price = (
            fill_price
            or exit_price_hint
            or await self._market_price(envelope.symbol)
            or envelope.entry_price
        )
        fees = (envelope.entry_fees_usd or Decimal("0")) + exit_fees
        if position is not None and position.funding_since_open_usd is not None:
            funding = position.funding_since_open_usd
        else:
            funding = envelope.funding_since_open_usd or Decimal("0")
        pnl_usd, pnl_pct = compute_pnl(envelope, exit_price, fees, funding)

        record = CloseRecord(
            trade_id=tid,
            symbol=envelope.symbol,
            exit_price=exit_price,
            exit_reason=reason,
            pnl_usd=pnl_usd,
            pnl_pct=pnl_pct,
            hold_duration_seconds=max(0, int((now - envelope.entered_at).total_seconds())),
            funding_paid_usd=funding,
            fees_usd=fees,
            close_order_ids=tuple(order_ids),
            closed_at=now,
        )
        if not self.ledger.finalize_close(record, needs_review=needs_review):
            existing = self.ledger.get_close_record(tid)
            if existing is not None:
                return existing
            raise TradeManagementError("Envelope vanished before close was recorded", trade_id=tid)

        await self.audit.record(
            "close", "success", trade_id=tid, symbol=envelope.symbol,
            message=f"{reason.value} @ {exit_price}",
            details={"pnl_usd": pnl_usd, "pnl_pct": pnl_pct, "close_order_ids": order_ids},
        )
        self.request_reflection(envelope, record)
        return record

    async def record_external_close(
        self,
        envelope: EnvelopeSnapshot,
        reason: TradeExitReason,
        exit_price: Decimal | None,
        fills: list[VenueFill] | tuple[VenueFill, ...] = (),
        *,
        needs_review: bool = True,
    ) -> CloseRecord:
        """Finalise an envelope whose position was closed outside this engine."""
        return await self._finalize(
            envelope, TradeExitReason(reason), exit_price, list(fills), [], None,
            needs_review=needs_review,
        )

    def request_reflection(self, envelope: EnvelopeSnapshot, record: CloseRecord):
        samples = self.ledger.list_price_samples(envelope.trade_id)
        facts = build_reflection_facts(envelope, record, samples)
        self.ledger.request_reflection(envelope.trade_id, facts)

    # ------------------------------------------------------------------
    # Abort
    # ------------------------------------------------------------------

    async def abort(self, envelope: EnvelopeSnapshot) -> bool:
        """Release close_pending once the venue confirms nothing is closing the position."""
        tid = envelope.trade_id
        position = await self._position(envelope.symbol)
        if position is None:
            logger.warning(f"[{tid}] Abort refused: venue position is gone")
            return False
        orders = await self._io(self.adapter.get_open_orders())
        prefix = close_key_prefix(envelope)
        if any(o.client_order_id and o.client_order_id.startswith(prefix) for o in orders):
            logger.warning(f"[{tid}] Abort refused: a close order is still resting")
            return False
        cleared = self.ledger.clear_close_pending(tid)
        if cleared:
            await self.audit.record("abort", "success", trade_id=tid, symbol=envelope.symbol)
        return cleared
