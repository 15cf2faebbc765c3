"""Trade manager entry point: run the trade monitor until SIGINT/SIGTERM."""

import asyncio
import logging
import signal

from trade_manager.config import Settings, load_settings
from trade_manager.database import create_db_and_tables, create_db_engine
from trade_manager.engine.audit import SqlAuditSink
from trade_manager.engine.ledger import TradeLedger
from trade_manager.engine.service import TradeManagementService
from trade_manager.engine.summary import build_trade_journal_summary
from trade_manager.services.lighter_client import LighterClient
from trade_manager.services.market_data import HyperliquidMarketClient
from trade_manager.services.notifier import TelegramNotifier
from trade_manager.services.paper_venue import PaperVenue
from trade_manager.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def build_adapter(settings: Settings, market: HyperliquidMarketClient):
    execution = settings.execution
    if execution.mode == "live":
        return LighterClient(
            host=execution.lighter_host,
            private_key=execution.lighter_private_key,
            api_key_index=execution.api_key_index,
            account_index=execution.account_index,
            markets=execution.markets,
        )
    logger.info("Execution mode: paper")
    return PaperVenue(market)


async def run(settings: Settings | None = None):
    settings = settings or load_settings()
    setup_logging(settings.log_level)

    engine = create_db_engine(settings.database_url)
    create_db_and_tables(engine)
    ledger = TradeLedger(engine)
    logger.info(build_trade_journal_summary(ledger))

    market = HyperliquidMarketClient()
    adapter = build_adapter(settings, market)
    notifier = None
    if settings.telegram_bot_token:
        notifier = TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_ids)
    audit = SqlAuditSink(engine, notifier)
    service = TradeManagementService(settings, ledger, market, adapter, audit)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    service.start()
    try:
        await stop_requested.wait()
        logger.info("Shutdown requested")
    finally:
        await service.stop()
        if isinstance(adapter, LighterClient):
            await adapter.close()
        if notifier is not None:
            await notifier.close()
        engine.dispose()


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
