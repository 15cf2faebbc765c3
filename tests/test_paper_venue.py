"""Tests for the in-memory paper venue."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from trade_manager.exceptions import OrderRejected
from trade_manager.schemas.envelope import TradeSide
from trade_manager.schemas.venue import CancelOutcome, OrderSpec, VenueOrder, VenueOrderRef
from trade_manager.services.paper_venue import PaperVenue


@pytest.fixture
def paper(market) -> PaperVenue:
    venue = PaperVenue(market, fee_bps=Decimal("5"))
    venue.open_position("btc", TradeSide.BUY, Decimal("2"), Decimal("90"))
    return venue


def _close_spec(size="2", side=TradeSide.SELL, key="t1:x:manual:1") -> OrderSpec:
    return OrderSpec(symbol="BTC", side=side, size=Decimal(size), client_order_id=key)


@pytest.mark.asyncio
async def test_reduce_only_close_fills_at_market(paper):
    ref = await paper.place_order(_close_spec())

    assert ref.filled_price == Decimal("100")
    assert ref.filled_size == Decimal("2")
    assert await paper.get_open_positions() == []

    [fill] = await paper.get_fills()
    assert fill.client_order_id == "t1:x:manual:1"
    assert fill.fee_usd == Decimal("0.1")


@pytest.mark.asyncio
async def test_reduce_only_size_capped_at_position(paper):
    ref = await paper.place_order(_close_spec(size="5"))
    assert ref.filled_size == Decimal("2")
    assert await paper.get_open_positions() == []


@pytest.mark.asyncio
async def test_partial_close_keeps_entry(paper):
    await paper.place_order(_close_spec(size="0.5"))
    [position] = await paper.get_open_positions()
    assert position.size == Decimal("1.5")
    assert position.entry_price == Decimal("90")
    assert position.side == TradeSide.BUY


@pytest.mark.asyncio
async def test_reduce_only_rejected_when_it_would_increase(paper):
    with pytest.raises(OrderRejected):
        await paper.place_order(_close_spec(side=TradeSide.BUY))
    with pytest.raises(OrderRejected):
        await paper.place_order(
            OrderSpec(symbol="ETH", side=TradeSide.SELL, size=Decimal("1"), client_order_id="x")
        )


@pytest.mark.asyncio
async def test_cancel_outcomes(paper):
    paper.add_resting_order(
        VenueOrder(order_id="tp-1", symbol="BTC", side=TradeSide.SELL, size=Decimal("2"), is_trigger=True)
    )
    ref = await paper.place_order(_close_spec(size="1"))

    assert await paper.cancel_order(VenueOrderRef(symbol="BTC", order_id="tp-1")) == CancelOutcome.CONFIRMED
    assert await paper.cancel_order(VenueOrderRef(symbol="BTC", order_id=ref.order_id)) == CancelOutcome.ALREADY_FILLED
    assert await paper.cancel_order(VenueOrderRef(symbol="BTC", order_id="nope")) == CancelOutcome.FAILED
    assert await paper.get_open_orders() == []


@pytest.mark.asyncio
async def test_get_fills_since(paper):
    await paper.place_order(_close_spec(size="1"))
    assert await paper.get_fills(since=datetime.now(timezone.utc) + timedelta(seconds=5)) == []
