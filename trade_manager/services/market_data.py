"""Market data from Hyperliquid: mid price and funding per perp symbol.

One ``meta_and_asset_ctxs`` call covers every listed asset, so the response
is cached briefly and shared by all symbols looked up in the same tick.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone

from hyperliquid.info import Info

from trade_manager.exceptions import MarketDataUnavailable
from trade_manager.schemas.venue import MarketSnapshot, to_decimal

logger = logging.getLogger(__name__)


def _to_hl_ticker(asset: str) -> str:
    """Convert asset name to Hyperliquid ticker format.

    Hyperliquid uses 'kX' instead of '1000X' (e.g. kBONK, kPEPE).
    """
    asset = asset.strip().upper()
    if asset.startswith("1000"):
        return "k" + asset[4:]
    return asset


class HyperliquidMarketClient:
    def __init__(self, info: Info | None = None, cache_seconds: float = 2.0):
        self._info = info
        self.cache_seconds = cache_seconds
        self._cache: dict[str, dict] | None = None
        self._cache_at = 0.0
        self._fetch_lock = asyncio.Lock()

    def _get_info(self) -> Info:
        # Info() fetches exchange metadata on construction
        if self._info is None:
            self._info = Info(skip_ws=True)
        return self._info

    async def _asset_contexts(self) -> dict[str, dict]:
        async with self._fetch_lock:
            if self._cache is not None and time.monotonic() - self._cache_at < self.cache_seconds:
                return self._cache

            loop = asyncio.get_running_loop()
            # meta_and_asset_ctxs is synchronous; run in executor to avoid blocking
            meta, ctxs = await loop.run_in_executor(None, self._get_info().meta_and_asset_ctxs)
            universe = meta.get("universe", [])
            self._cache = {asset["name"]: ctx for asset, ctx in zip(universe, ctxs)}
            self._cache_at = time.monotonic()
            return self._cache

    async def get_snapshot(self, symbol: str) -> MarketSnapshot:
        hl_ticker = _to_hl_ticker(symbol)
        try:
            contexts = await self._asset_contexts()
        except Exception as e:
            logger.error(f"Error fetching asset contexts for {symbol} ({hl_ticker}): {e}")
            raise MarketDataUnavailable(str(e), symbol=symbol) from e

        ctx = contexts.get(hl_ticker)
        if ctx is None:
            raise MarketDataUnavailable(f"{hl_ticker} not listed on Hyperliquid", symbol=symbol)

        price = to_decimal(ctx.get("midPx")) or to_decimal(ctx.get("markPx"))
        if price is None or price <= 0:
            raise MarketDataUnavailable(f"No price for {hl_ticker}", symbol=symbol)

        return MarketSnapshot(
            symbol=symbol.strip().upper(),
            price=price,
            funding_rate=to_decimal(ctx.get("funding")),
            timestamp=datetime.now(timezone.utc),
        )
