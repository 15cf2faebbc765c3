"""Lighter DEX execution adapter.

Wraps the lighter-sdk async API: reduce-only market closes, cancels, and
account reads (positions, active orders, trades).
"""

import asyncio
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

import lighter

from trade_manager.exceptions import OrderOutcomeUnknown, OrderRejected
from trade_manager.schemas.envelope import TradeSide
from trade_manager.schemas.venue import (
    CancelOutcome,
    OrderRef,
    OrderSpec,
    VenueFill,
    VenueOrder,
    VenueOrderRef,
    VenuePosition,
    to_decimal,
)

logger = logging.getLogger(__name__)

# Lighter client_order_index is an integer; string keys are hashed into this range
CLIENT_ORDER_INDEX_RANGE = 2**31
AUTH_TOKEN_TTL_SECONDS = 600
FILL_LOOKBACK = timedelta(days=1)


def client_order_index_for(client_order_id: str) -> int:
    """Deterministic integer order reference for a string idempotency key."""
    digest = hashlib.blake2b(client_order_id.encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big") % CLIENT_ORDER_INDEX_RANGE


def _scale(value: Decimal, decimals: int) -> int:
    return int((value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_HALF_UP))


class LighterClient:
    """ExecutionAdapter backed by the Lighter SDK."""

    def __init__(
        self,
        host: str,
        private_key: str,
        api_key_index: int,
        account_index: int,
        markets: dict[str, int] | None = None,
    ):
        self.host = host
        self.private_key = private_key
        self.api_key_index = api_key_index
        self.account_index = account_index
        self._api_client = None
        self._signer_client = None
        self._market_ids: dict[str, int] = {s.upper(): i for s, i in (markets or {}).items()}
        self._market_meta: dict[int, dict] = {}  # market_index → {price_decimals, size_decimals}
        self._client_ids: dict[int, str] = {}  # client_order_index → idempotency key

    async def _ensure_clients(self):
        """Lazily initialize Lighter SDK clients."""
        if self._api_client is not None:
            return
        config = lighter.Configuration(host=self.host)
        self._api_client = lighter.ApiClient(configuration=config)
        self._signer_client = lighter.SignerClient(
            url=self.host,
            account_index=self.account_index,
            api_private_keys={self.api_key_index: self.private_key},
        )
        logger.info("Lighter SDK clients initialized")

    async def _load_markets(self):
        """Fetch the symbol → market index table once."""
        order_api = lighter.OrderApi(self._api_client)
        resp = await order_api.order_books()
        for book in getattr(resp, "order_books", None) or []:
            symbol = str(getattr(book, "symbol", "")).upper()
            market_id = getattr(book, "market_id", None)
            if symbol and market_id is not None:
                self._market_ids.setdefault(symbol, int(market_id))

    async def _market_index(self, symbol: str) -> int:
        symbol = symbol.upper()
        if symbol not in self._market_ids:
            await self._load_markets()
        if symbol not in self._market_ids:
            raise OrderRejected(f"Unknown Lighter market for {symbol}", symbol=symbol)
        return self._market_ids[symbol]

    def _symbol_for(self, market_index: int) -> str | None:
        for symbol, idx in self._market_ids.items():
            if idx == market_index:
                return symbol
        return None

    async def _get_market_meta(self, market_index: int) -> dict:
        """Fetch and cache price/size decimal info for a market."""
        if market_index in self._market_meta:
            return self._market_meta[market_index]

        order_api = lighter.OrderApi(self._api_client)
        resp = await order_api.order_book_details(market_id=market_index)
        for book in resp.order_book_details or []:
            if book.market_id == market_index:
                meta = {
                    "price_decimals": int(book.supported_price_decimals),
                    "size_decimals": int(book.supported_size_decimals),
                }
                self._market_meta[market_index] = meta
                logger.info(f"Market {market_index} meta: {meta}")
                return meta
        raise OrderRejected(f"Could not find market metadata for market_index={market_index}")

    async def _auth_token(self) -> str:
        token, error = self._signer_client.create_auth_token_with_expiry(AUTH_TOKEN_TTL_SECONDS)
        if error is not None:
            raise OrderRejected(f"Could not create Lighter auth token: {error}")
        return token

    async def _account(self):
        account_api = lighter.AccountApi(self._api_client)
        resp = await account_api.account(by="index", value=str(self.account_index))
        # Unwrap DetailedAccounts → DetailedAccount
        if hasattr(resp, "accounts") and resp.accounts:
            return resp.accounts[0]
        return resp

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_order(self, spec: OrderSpec) -> OrderRef:
        """Place a reduce-only market (IOC) order, or a limit order when order_type='limit'."""
        await self._ensure_clients()
        market_index = await self._market_index(spec.symbol)
        meta = await self._get_market_meta(market_index)
        client_order_index = client_order_index_for(spec.client_order_id)
        self._client_ids[client_order_index] = spec.client_order_id
        is_ask = spec.side == TradeSide.SELL

        if spec.price is None:
            raise OrderRejected("Lighter orders need a worst acceptable price", symbol=spec.symbol)
        price_int = _scale(spec.price, meta["price_decimals"])
        amount_int = _scale(spec.size, meta["size_decimals"])
        logger.debug(
            f"Order encode: price={spec.price} → {price_int} ({meta['price_decimals']}dp), "
            f"amount={spec.size} → {amount_int} ({meta['size_decimals']}dp)"
        )

        try:
            if spec.order_type == "market":
                order, resp, error = await self._signer_client.create_market_order(
                    market_index=market_index,
                    client_order_index=client_order_index,
                    base_amount=amount_int,
                    avg_execution_price=price_int,
                    is_ask=is_ask,
                    reduce_only=spec.reduce_only,
                )
            else:
                order, resp, error = await self._signer_client.create_order(
                    market_index=market_index,
                    client_order_index=client_order_index,
                    base_amount=amount_int,
                    price=price_int,
                    is_ask=is_ask,
                    order_type=0,       # LIMIT
                    time_in_force=1,    # GOOD_TILL_TIME
                    reduce_only=spec.reduce_only,
                )
        except asyncio.TimeoutError as e:
            raise OrderOutcomeUnknown(
                f"Order {spec.client_order_id} timed out", symbol=spec.symbol
            ) from e
        except Exception as e:
            logger.error(f"[{spec.symbol}] Order failed: {e}")
            raise OrderRejected(str(e), symbol=spec.symbol) from e

        if error is not None:
            logger.error(f"[{spec.symbol}] Order rejected: {error}")
            raise OrderRejected(str(error), symbol=spec.symbol)

        filled_price = getattr(order, "avg_execution_price", None) or getattr(order, "price", None)
        filled_amount = getattr(order, "filled_amount", None) or getattr(order, "base_amount", None)
        order_status = getattr(order, "status", None)
        logger.info(f"[{spec.symbol}] Order placed: {spec.client_order_id} ({spec.order_type})")
        return OrderRef(
            order_id=str(client_order_index),
            client_order_id=spec.client_order_id,
            symbol=spec.symbol,
            filled_price=to_decimal(filled_price),
            filled_size=to_decimal(filled_amount),
            status=str(order_status) if order_status is not None else None,
        )

    async def cancel_order(self, ref: VenueOrderRef) -> CancelOutcome:
        """Cancel an order. A failed cancel of an order that shows up in fills means it filled."""
        await self._ensure_clients()
        market_index = await self._market_index(ref.symbol)
        try:
            _cancel, resp, error = await self._signer_client.cancel_order(
                market_index=market_index, order_index=int(ref.order_id)
            )
        except Exception as e:
            logger.error(f"[{ref.symbol}] Cancel failed: {e}")
            return CancelOutcome.FAILED

        if error is None:
            return CancelOutcome.CONFIRMED

        logger.warning(f"[{ref.symbol}] Cancel rejected: {error} | resp={resp}")
        since = datetime.now(timezone.utc) - FILL_LOOKBACK
        fills = await self.get_fills(since=since)
        if any(f.order_id == ref.order_id for f in fills):
            return CancelOutcome.ALREADY_FILLED
        return CancelOutcome.FAILED

    # ------------------------------------------------------------------
    # Account reads
    # ------------------------------------------------------------------

    async def get_open_positions(self) -> list[VenuePosition]:
        """Get all open positions from the Lighter exchange."""
        await self._ensure_clients()
        account = await self._account()
        positions = []
        for pos in getattr(account, "positions", None) or []:
            size = to_decimal(getattr(pos, "position", None)) or Decimal("0")
            if size == 0:
                continue
            market_index = int(getattr(pos, "market_id", 0))
            symbol = str(getattr(pos, "symbol", "") or self._symbol_for(market_index) or market_index).upper()
            self._market_ids.setdefault(symbol, market_index)
            sign = int(getattr(pos, "sign", 1) or 1)
            funding_paid = to_decimal(getattr(pos, "total_funding_paid_out", None))
            positions.append(
                VenuePosition(
                    symbol=symbol,
                    side=TradeSide.BUY if sign > 0 else TradeSide.SELL,
                    size=abs(size),
                    entry_price=to_decimal(getattr(pos, "avg_entry_price", None)),
                    position_value_usd=to_decimal(getattr(pos, "position_value", None)),
                    liquidation_price=to_decimal(getattr(pos, "liquidation_price", None)),
                    margin_used_usd=to_decimal(getattr(pos, "allocated_margin", None)),
                    funding_since_open_usd=funding_paid,
                )
            )
        return positions

    async def get_open_orders(self) -> list[VenueOrder]:
        """Active orders on every market where the account holds a position."""
        await self._ensure_clients()
        account = await self._account()
        market_ids = {
            int(getattr(p, "market_id", 0))
            for p in getattr(account, "positions", None) or []
            if int(getattr(p, "open_order_count", 0) or 0) > 0
            or int(getattr(p, "position_tied_order_count", 0) or 0) > 0
        }
        if not market_ids:
            return []

        token = await self._auth_token()
        order_api = lighter.OrderApi(self._api_client)
        orders = []
        for market_index in sorted(market_ids):
            resp = await order_api.account_active_orders(
                account_index=self.account_index, market_id=market_index, auth=token
            )
            symbol = self._symbol_for(market_index) or str(market_index)
            for o in getattr(resp, "orders", None) or []:
                client_index = int(getattr(o, "client_order_index", 0) or 0)
                orders.append(
                    VenueOrder(
                        order_id=str(getattr(o, "order_index", "")),
                        symbol=symbol,
                        side=TradeSide.SELL if getattr(o, "is_ask", False) else TradeSide.BUY,
                        size=to_decimal(getattr(o, "remaining_base_amount", None)) or Decimal("0"),
                        price=to_decimal(getattr(o, "price", None)),
                        client_order_id=self._client_ids.get(client_index, str(client_index)),
                        reduce_only=bool(getattr(o, "reduce_only", False)),
                        is_trigger=bool(to_decimal(getattr(o, "trigger_price", None))),
                    )
                )
        return orders

    async def get_fills(self, since: datetime | None = None) -> list[VenueFill]:
        """Account trades since ``since``, newest first as returned by the API."""
        await self._ensure_clients()
        token = await self._auth_token()
        order_api = lighter.OrderApi(self._api_client)
        resp = await order_api.trades(
            sort_by="timestamp", sort_dir="desc", limit=100,
            account_index=self.account_index, auth=token,
        )
        fills = []
        for t in getattr(resp, "trades", None) or []:
            ts = datetime.fromtimestamp(int(getattr(t, "timestamp", 0)) / 1000, tz=timezone.utc)
            if since is not None and ts < since:
                continue
            is_seller = int(getattr(t, "ask_account_id", -1)) == self.account_index
            order_id = getattr(t, "ask_id" if is_seller else "bid_id", None)
            client_index = getattr(t, "ask_client_id" if is_seller else "bid_client_id", None)
            market_index = int(getattr(t, "market_id", 0))
            is_maker = bool(getattr(t, "is_maker_ask", False)) == is_seller
            fee = getattr(t, "maker_fee" if is_maker else "taker_fee", None)
            fills.append(
                VenueFill(
                    symbol=self._symbol_for(market_index) or str(market_index),
                    side=TradeSide.SELL if is_seller else TradeSide.BUY,
                    price=to_decimal(getattr(t, "price", None)) or Decimal("0"),
                    size=to_decimal(getattr(t, "size", None)) or Decimal("0"),
                    fee_usd=to_decimal(fee) or Decimal("0"),
                    order_id=str(order_id) if order_id is not None else None,
                    client_order_id=(
                        self._client_ids.get(int(client_index), str(client_index))
                        if client_index is not None else None
                    ),
                    is_liquidation=str(getattr(t, "type", "")) in ("liquidation", "deleverage"),
                    timestamp=ts,
                )
            )
        return fills

    async def close(self):
        """Close SDK clients."""
        if self._api_client is not None:
            await self._api_client.close()
        if self._signer_client is not None:
            await self._signer_client.close()
        self._api_client = None
        self._signer_client = None
        self._market_meta = {}
