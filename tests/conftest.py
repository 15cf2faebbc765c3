"""Shared fixtures: in-memory ledger, fake venue, fake market data, recording audit sink."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from trade_manager import models  # noqa: F401
from trade_manager.config import CloseExecutionSettings, TradeManagementSettings
from trade_manager.engine.ledger import TradeLedger
from trade_manager.exceptions import MarketDataUnavailable, OrderOutcomeUnknown
from trade_manager.schemas.envelope import EnvelopeSnapshot, TradeSide
from trade_manager.schemas.venue import (
    CancelOutcome,
    MarketSnapshot,
    OrderRef,
    OrderSpec,
    VenueFill,
    VenueOrder,
    VenuePosition,
)


def _d(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeMarket:
    def __init__(self, prices: dict | None = None):
        self.prices = {k: _d(v) for k, v in (prices or {}).items()}
        self.calls: list[str] = []

    def set_price(self, symbol: str, price):
        self.prices[symbol] = _d(price)

    async def get_snapshot(self, symbol: str) -> MarketSnapshot:
        self.calls.append(symbol)
        if symbol not in self.prices:
            raise MarketDataUnavailable(f"no price for {symbol}", symbol=symbol)
        return MarketSnapshot(symbol=symbol, price=self.prices[symbol])


class FakeVenue:
    """In-memory venue. ``place_effects`` scripts successive place_order calls:

    None          fill the order completely
    "accept"      accept but leave the position untouched
    "rest"        accept and leave a resting order with the same client id
    "unknown"     fill, then raise OrderOutcomeUnknown
    Exception     raise it without touching the position
    """

    def __init__(self):
        self.positions: dict[str, VenuePosition] = {}
        self.orders: list[VenueOrder] = []
        self.fills: list[VenueFill] = []
        self.placed: list[OrderSpec] = []
        self.cancelled: list[str] = []
        self.place_effects: list = []
        self.cancel_outcomes: dict[str, CancelOutcome] = {}
        self.fill_price: Decimal | None = None
        self.fill_fee = Decimal("0")

    def set_position(self, symbol: str, side: TradeSide | str, size, entry_price, **kwargs):
        self.positions[symbol] = VenuePosition(
            symbol=symbol, side=TradeSide(side), size=_d(size), entry_price=_d(entry_price), **kwargs
        )

    def add_fill(self, symbol: str, side, price, size, **kwargs):
        kwargs.setdefault("timestamp", datetime.now(timezone.utc))
        fill = VenueFill(symbol=symbol, side=TradeSide(side), price=_d(price), size=_d(size), **kwargs)
        self.fills.append(fill)
        return fill

    def _fill(self, spec: OrderSpec, order_id: str):
        pos = self.positions.pop(spec.symbol, None)
        price = self.fill_price or spec.price or (pos.entry_price if pos else Decimal("1"))
        self.add_fill(
            spec.symbol, spec.side, price, pos.size if pos else spec.size,
            fee_usd=self.fill_fee, order_id=order_id, client_order_id=spec.client_order_id,
        )

    async def place_order(self, spec: OrderSpec) -> OrderRef:
        self.placed.append(spec)
        order_id = f"o{len(self.placed)}"
        effect = self.place_effects.pop(0) if self.place_effects else None
        if isinstance(effect, Exception):
            raise effect
        if effect == "unknown":
            self._fill(spec, order_id)
            raise OrderOutcomeUnknown("timed out", symbol=spec.symbol)
        if effect == "rest":
            self.orders.append(
                VenueOrder(
                    order_id=order_id, symbol=spec.symbol, side=spec.side, size=spec.size,
                    client_order_id=spec.client_order_id, reduce_only=True,
                )
            )
        elif effect != "accept":
            self._fill(spec, order_id)
        return OrderRef(order_id=order_id, client_order_id=spec.client_order_id, symbol=spec.symbol)

    async def cancel_order(self, ref) -> CancelOutcome:
        self.cancelled.append(ref.order_id)
        return self.cancel_outcomes.get(ref.order_id, CancelOutcome.CONFIRMED)

    async def get_open_positions(self) -> list[VenuePosition]:
        return list(self.positions.values())

    async def get_open_orders(self) -> list[VenueOrder]:
        return list(self.orders)

    async def get_fills(self, since: datetime | None = None) -> list[VenueFill]:
        return [f for f in self.fills if since is None or f.timestamp >= since]


class RecordingAudit:
    def __init__(self):
        self.events: list[dict] = []

    async def record(self, action, outcome, **kwargs):
        self.events.append({"action": action, "outcome": outcome, **kwargs})

    def outcomes(self, action: str | None = None) -> list[str]:
        return [e["outcome"] for e in self.events if action is None or e["action"] == action]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(engine) -> TradeLedger:
    return TradeLedger(engine)


@pytest.fixture
def tm_settings() -> TradeManagementSettings:
    return TradeManagementSettings(
        io_timeout_seconds=1.0,
        close_retry_min_seconds=0,
        close_execution=CloseExecutionSettings(
            max_attempts=3,
            backoff_base_seconds=0,
            backoff_max_seconds=0,
            confirm_delay_seconds=0,
        ),
    )


@pytest.fixture
def market() -> FakeMarket:
    return FakeMarket({"BTC": "100"})


@pytest.fixture
def venue() -> FakeVenue:
    return FakeVenue()


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def make_envelope():
    """Factory for EnvelopeSnapshots: BTC long, entry 100, size 1, SL 5%, TP 10%."""

    def _make(**overrides) -> EnvelopeSnapshot:
        values = dict(
            trade_id="t1",
            symbol="BTC",
            side="buy",
            entry_price=Decimal("100"),
            size=Decimal("1"),
            entered_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            stop_loss_pct=Decimal("0.05"),
            take_profit_pct=Decimal("0.10"),
            max_hold_seconds=3600,
        )
        values.update(overrides)
        return EnvelopeSnapshot(**values)

    return _make
