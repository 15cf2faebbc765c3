"""Trade monitor: one tick reconciles with the venue, evaluates every open
envelope and dispatches closes.

Per envelope: open -> (evaluating) -> close_pending -> closed.

Tick:
1. Fetch the venue account snapshot once (positions, open orders, fills).
2. Reconcile and apply the resulting actions through the ledger.
3. Evaluate each open envelope under bounded concurrency. A triggered exit
   sets close_pending before any order is placed; the close itself runs as a
   background task.
4. Adapt the polling interval to whether anything is open.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from trade_manager.config import TradeManagementSettings
from trade_manager.engine.exit_evaluator import ExitPolicy, evaluate_exit
from trade_manager.engine.execution import ExecutionCoordinator
from trade_manager.engine.interfaces import AuditSink, ExecutionAdapter, MarketClient
from trade_manager.engine.ledger import TradeLedger
from trade_manager.engine.reconciliation import (
    AdoptOrphan,
    FlagConflict,
    ForceClose,
    ReconciliationAction,
    ReconciliationGuard,
)
from trade_manager.engine.scheduler import Ticker
from trade_manager.exceptions import (
    CloseEscalated,
    MarketDataUnavailable,
    PersistenceFailure,
    ReconciliationMismatch,
    TradeManagementError,
)
from trade_manager.schemas.envelope import EnvelopeSnapshot, TradeExitReason
from trade_manager.schemas.venue import AccountSnapshot, MarketSnapshot

logger = logging.getLogger(__name__)


class TradeMonitor:
    def __init__(
        self,
        settings: TradeManagementSettings,
        ledger: TradeLedger,
        market: MarketClient,
        adapter: ExecutionAdapter,
        audit: AuditSink,
        *,
        slippage_bps: Decimal = Decimal("50"),
        coordinator: ExecutionCoordinator | None = None,
    ):
        self.settings = settings
        self.ledger = ledger
        self.market = market
        self.adapter = adapter
        self.audit = audit
        self.policy = ExitPolicy.from_settings(settings)
        self.guard = ReconciliationGuard(settings.dust_min_notional_usd)
        self.coordinator = coordinator or ExecutionCoordinator(
            ledger, adapter, market, audit, settings, slippage_bps=slippage_bps
        )
        self._ticker = Ticker(self.tick, settings.monitor_interval_seconds)
        self._tick_lock = asyncio.Lock()
        self._trade_locks: dict[str, asyncio.Lock] = {}
        self._close_tasks: dict[str, asyncio.Task] = {}
        self._open_count = 0
        self._started = False

    @property
    def stopping(self) -> asyncio.Event:
        return self._ticker.stopping

    @property
    def running(self) -> bool:
        return self._started and not self.stopping.is_set()

    @property
    def interval_seconds(self) -> int:
        return self._ticker.interval_seconds

    def start(self):
        if self._started:
            return
        self._started = True
        self._ticker.start()
        logger.info("Trade monitor started")

    async def stop(self):
        """Stop scheduling, then wait for the in-flight tick and every in-flight close."""
        self._ticker.stop()
        async with self._tick_lock:
            pass
        await self.drain()
        self._started = False
        logger.info("Trade monitor stopped")

    async def drain(self):
        """Wait for all dispatched close tasks to finish."""
        while self._close_tasks:
            await asyncio.gather(*list(self._close_tasks.values()), return_exceptions=True)

    def _trade_lock(self, trade_id: str) -> asyncio.Lock:
        lock = self._trade_locks.get(trade_id)
        if lock is None:
            lock = asyncio.Lock()
            self._trade_locks[trade_id] = lock
        return lock

    async def _io(self, coro):
        return await asyncio.wait_for(coro, timeout=self.settings.io_timeout_seconds)

    async def _audit(self, action: str, outcome: str, **kwargs):
        try:
            await self.audit.record(action, outcome, **kwargs)
        except TradeManagementError as e:
            logger.error(f"Audit write failed for {action}/{outcome}: {e}")

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self):
        """Run one monitoring cycle. Never raises."""
        if self.stopping.is_set():
            return
        if self._tick_lock.locked():
            logger.info("Trade monitor tick skipped: previous tick still running")
            return
        async with self._tick_lock:
            try:
                await self._tick_once()
            except Exception as e:
                logger.error(f"Trade monitor tick failed: {e}", exc_info=True)
                await self._audit("tick", "error", message=str(e))
            finally:
                self._adapt_interval()

    def _adapt_interval(self):
        if self.stopping.is_set():
            return
        if self._open_count > 0:
            self._ticker.reschedule(self.settings.active_monitor_interval_seconds)
        else:
            self._ticker.reschedule(self.settings.monitor_interval_seconds)

    async def _tick_once(self):
        now = datetime.now(timezone.utc)
        envelopes = self.ledger.list_open_envelopes()
        account = await self._fetch_account(envelopes)

        prices = await self._orphan_prices(account, envelopes)
        actions = self.guard.reconcile(account, envelopes, now, prices)
        conflicts = await self._apply_actions(actions, envelopes)

        envelopes = self.ledger.list_open_envelopes()
        self._open_count = len(envelopes)
        if not envelopes:
            return

        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        async def _run(env: EnvelopeSnapshot):
            async with semaphore:
                await self._process_envelope(env, account, now, conflicts)

        await asyncio.gather(*(_run(env) for env in envelopes))

    async def _fetch_account(self, envelopes: list[EnvelopeSnapshot]) -> AccountSnapshot:
        try:
            positions, orders = await asyncio.gather(
                self._io(self.adapter.get_open_positions()),
                self._io(self.adapter.get_open_orders()),
            )
            fills = []
            if envelopes:
                since = min(env.entered_at for env in envelopes)
                fills = await self._io(self.adapter.get_fills(since=since))
        except asyncio.TimeoutError as e:
            raise TradeManagementError("Timed out fetching venue account state") from e
        return AccountSnapshot(
            positions=tuple(positions),
            open_orders=tuple(orders),
            fills=tuple(fills),
        )

    async def _orphan_prices(
        self, account: AccountSnapshot, envelopes: list[EnvelopeSnapshot]
    ) -> dict[str, Decimal]:
        """Market prices for untracked positions the venue reports without one."""
        prices: dict[str, Decimal] = {}
        for symbol in self.guard.unpriced_orphans(account, envelopes):
            try:
                prices[symbol] = (await self._snapshot(symbol)).price
            except MarketDataUnavailable as e:
                logger.warning(f"[{symbol}] No market price for untracked position: {e}")
        return prices

    async def _apply_actions(
        self, actions: list[ReconciliationAction], envelopes: list[EnvelopeSnapshot]
    ) -> set[str]:
        """Apply reconciliation actions. Returns the trade ids in conflict."""
        by_id = {env.trade_id: env for env in envelopes}
        conflicts: set[str] = set()

        for action in actions:
            if isinstance(action, FlagConflict):
                conflicts.add(action.trade_id)
                continue
            try:
                if isinstance(action, AdoptOrphan):
                    orphan = self.ledger.create_envelope(action.envelope)
                    await self._audit(
                        "adopt_orphan", "success", trade_id=orphan.trade_id, symbol=orphan.symbol,
                        message=f"{orphan.side.value} size={orphan.size} entry={orphan.entry_price}",
                    )
                elif isinstance(action, ForceClose) and action.trade_id in by_id:
                    await self._force_close(by_id[action.trade_id], action)
            except Exception as e:
                logger.error(f"Reconciliation action {type(action).__name__} failed: {e}", exc_info=True)
                await self._audit("reconcile", "error", message=str(e))

        return conflicts

    async def _force_close(self, env: EnvelopeSnapshot, action: ForceClose):
        async with self._trade_lock(env.trade_id):
            if not self.ledger.try_set_close_pending(env.trade_id, action.reason):
                return
            record = await self.coordinator.record_external_close(
                env, action.reason, action.exit_price, action.fills, needs_review=True
            )
            logger.warning(
                f"[{env.trade_id}] Force closed {env.symbol} ({record.exit_reason.value}); needs review"
            )
            await self._audit(
                "force_close", "success", trade_id=env.trade_id, symbol=env.symbol,
                message=f"Venue position gone; recorded as {record.exit_reason.value}",
            )

    # ------------------------------------------------------------------
    # Per-envelope
    # ------------------------------------------------------------------

    async def _process_envelope(
        self,
        env: EnvelopeSnapshot,
        account: AccountSnapshot,
        now: datetime,
        conflicts: set[str],
    ):
        if env.trade_id in self._close_tasks or self.stopping.is_set():
            return
        async with self._trade_lock(env.trade_id):
            try:
                await self._evaluate_envelope(env, account, now, conflicts)
            except MarketDataUnavailable as e:
                logger.warning(f"[{env.symbol}] Market data unavailable, skipping this tick: {e}")
            except ReconciliationMismatch as e:
                logger.error(f"[{env.trade_id}] {e}")
                await self._audit(
                    "reconcile", "mismatch", trade_id=env.trade_id, symbol=env.symbol, message=str(e),
                )
            except PersistenceFailure as e:
                logger.error(f"[{env.trade_id}] Ledger write failed; no order action this tick: {e}")
                await self._audit(
                    "evaluate", "error", trade_id=env.trade_id, symbol=env.symbol, message=str(e),
                )
            except Exception as e:
                logger.error(f"[{env.trade_id}] Evaluation failed: {e}", exc_info=True)
                await self._audit(
                    "evaluate", "error", trade_id=env.trade_id, symbol=env.symbol, message=str(e),
                )

    async def _snapshot(self, symbol: str) -> MarketSnapshot:
        try:
            return await self._io(self.market.get_snapshot(symbol))
        except asyncio.TimeoutError as e:
            raise MarketDataUnavailable("Timed out fetching market snapshot", symbol=symbol) from e

    async def _evaluate_envelope(
        self,
        env: EnvelopeSnapshot,
        account: AccountSnapshot,
        now: datetime,
        conflicts: set[str],
    ):
        tid = env.trade_id
        position = account.position_for(env.symbol)

        if tid in conflicts:
            raise ReconciliationMismatch(
                f"{env.symbol} ledger side {env.side.value} but venue side "
                f"{position.side.value if position else 'none'}; manual review required",
                symbol=env.symbol,
                trade_id=tid,
            )

        if env.close_pending:
            self._maybe_resume_close(env, now)
            return

        snapshot = await self._snapshot(env.symbol)
        self.ledger.record_price_sample(tid, env.symbol, snapshot.price, now)

        if (
            position is not None
            and position.funding_since_open_usd is not None
            and position.funding_since_open_usd != env.funding_since_open_usd
        ):
            self.ledger.update_funding(tid, position.funding_since_open_usd)

        evaluation = evaluate_exit(env, snapshot, now, self.policy, position)

        if evaluation.trailing is not None:
            self.ledger.update_trailing(tid, evaluation.trailing)
            if evaluation.trailing.trailing_activated and not env.trailing_activated:
                logger.info(f"[{tid}] Trailing stop activated at {evaluation.trailing.water_price}")

        decision = evaluation.decision
        if decision is None:
            return

        if self.stopping.is_set():
            return

        # The lock must be durable before any venue call
        if not self.ledger.try_set_close_pending(tid, decision.reason, now):
            logger.info(f"[{tid}] close_pending already held; not dispatching")
            return
        logger.info(f"[{tid}] Exit triggered: {decision.reason.value} at {decision.exit_price}")
        await self._audit(
            "exit_triggered", "success", trade_id=tid, symbol=env.symbol,
            message=f"{decision.reason.value} @ {decision.exit_price}",
        )
        locked = self.ledger.get_envelope(tid) or env
        self._dispatch_close(locked, decision.reason, decision.exit_price)

    def _maybe_resume_close(self, env: EnvelopeSnapshot, now: datetime):
        retry_after = timedelta(seconds=self.settings.close_retry_min_seconds)
        if env.close_pending_at is not None and now - env.close_pending_at < retry_after:
            return
        reason = env.close_pending_reason or TradeExitReason.MANUAL
        logger.info(f"[{env.trade_id}] Resuming pending close ({reason.value})")
        self._dispatch_close(env, reason, None)

    def _dispatch_close(self, env: EnvelopeSnapshot, reason: TradeExitReason, hint: Decimal | None):
        tid = env.trade_id
        task = asyncio.create_task(self._run_close(env, reason, hint), name=f"close:{tid}")
        self._close_tasks[tid] = task
        task.add_done_callback(lambda _t: self._close_finished(tid))

    def _close_finished(self, trade_id: str):
        self._close_tasks.pop(trade_id, None)
        lock = self._trade_locks.get(trade_id)
        if lock is not None and not lock.locked():
            del self._trade_locks[trade_id]

    async def _run_close(self, env: EnvelopeSnapshot, reason: TradeExitReason, hint: Decimal | None):
        try:
            record = await self.coordinator.close(env, reason, hint)
            logger.info(
                f"[{env.trade_id}] Close confirmed: {record.exit_reason.value} "
                f"pnl=${record.pnl_usd:.2f} ({record.pnl_pct:.2%})"
            )
        except CloseEscalated as e:
            logger.error(f"[{env.trade_id}] Close escalated to operator: {e}")
        except Exception as e:
            logger.error(f"[{env.trade_id}] Close failed: {e}", exc_info=True)
            await self._audit(
                "close", "error", trade_id=env.trade_id, symbol=env.symbol, message=str(e),
            )
