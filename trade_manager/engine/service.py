"""Trade management service: owns the lifetime of the trade monitor."""

import logging

from trade_manager.config import Settings
from trade_manager.engine.interfaces import AuditSink, ExecutionAdapter, MarketClient
from trade_manager.engine.ledger import TradeLedger
from trade_manager.engine.monitor import TradeMonitor

logger = logging.getLogger(__name__)


class TradeManagementService:
    def __init__(
        self,
        settings: Settings,
        ledger: TradeLedger,
        market: MarketClient,
        adapter: ExecutionAdapter,
        audit: AuditSink,
    ):
        self.settings = settings
        self.ledger = ledger
        self.market = market
        self.adapter = adapter
        self.audit = audit
        self.monitor: TradeMonitor | None = None

    def start(self) -> TradeMonitor | None:
        """Build and start the monitor. No-op when disabled or already running."""
        if not self.settings.trade_management.enabled:
            logger.info("Trade management disabled; monitor not started")
            return None
        if self.monitor is not None:
            return self.monitor
        self.monitor = TradeMonitor(
            self.settings.trade_management,
            self.ledger,
            self.market,
            self.adapter,
            self.audit,
            slippage_bps=self.settings.execution.slippage_bps,
        )
        self.monitor.start()
        return self.monitor

    async def stop(self):
        if self.monitor is None:
            return
        monitor, self.monitor = self.monitor, None
        await monitor.stop()
