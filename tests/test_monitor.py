"""Tests for the trade monitor tick."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from trade_manager.engine.monitor import TradeMonitor
from trade_manager.exceptions import PersistenceFailure
from trade_manager.schemas.envelope import TradeExitReason, TradeSide, TradeStatus
from trade_manager.schemas.venue import VenuePosition


@pytest.fixture
def monitor(tm_settings, ledger, market, venue, audit):
    return TradeMonitor(tm_settings, ledger, market, venue, audit)


@pytest.fixture
def tracked(ledger, make_envelope, venue):
    """An open BTC long that the venue also holds."""
    env = ledger.create_envelope(make_envelope())
    venue.set_position("BTC", "buy", "1", "100")
    return env


async def _tick(monitor):
    await monitor.tick()
    await monitor.drain()


# ---------------------------------------------------------------------------
# Exits
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stop_loss_closes_position(monitor, tracked, market, venue, ledger, audit):
    market.set_price("BTC", "94")
    venue.fill_price = Decimal("94")

    await _tick(monitor)

    env = ledger.get_envelope("t1")
    assert env.status == TradeStatus.CLOSED
    record = ledger.get_close_record("t1")
    assert record.exit_reason == TradeExitReason.STOP_LOSS
    assert record.exit_price == Decimal("94")
    assert len(venue.placed) == 1
    assert audit.outcomes("exit_triggered") == ["success"]
    assert audit.outcomes("close") == ["success"]


@pytest.mark.asyncio
async def test_quiet_tick_records_price_sample(monitor, tracked, market, venue, ledger):
    market.set_price("BTC", "101.5")

    await _tick(monitor)

    env = ledger.get_envelope("t1")
    assert env.is_open
    assert env.close_pending is False
    assert venue.placed == []
    assert [price for _, price in ledger.list_price_samples("t1")] == [Decimal("101.5")]


@pytest.mark.asyncio
async def test_funding_copied_from_venue(monitor, ledger, make_envelope, venue):
    ledger.create_envelope(make_envelope())
    venue.set_position("BTC", "buy", "1", "100", funding_since_open_usd=Decimal("0.75"))

    await _tick(monitor)

    assert ledger.get_envelope("t1").funding_since_open_usd == Decimal("0.75")


@pytest.mark.asyncio
async def test_close_pending_envelope_resumes_close(monitor, tracked, ledger, venue):
    ledger.try_set_close_pending("t1", TradeExitReason.TIME_STOP)

    await _tick(monitor)

    assert ledger.get_close_record("t1").exit_reason == TradeExitReason.TIME_STOP
    assert venue.placed[0].client_order_id == "t1:x:time_stop:1"


@pytest.mark.asyncio
async def test_recent_close_pending_not_retried(tm_settings, ledger, market, venue, audit, tracked):
    settings = tm_settings.model_copy(update={"close_retry_min_seconds": 300})
    monitor = TradeMonitor(settings, ledger, market, venue, audit)
    ledger.try_set_close_pending("t1", TradeExitReason.TIME_STOP)

    await _tick(monitor)

    assert venue.placed == []
    assert ledger.get_envelope("t1").close_pending is True


@pytest.mark.asyncio
async def test_escalated_close_keeps_envelope_pending(monitor, tracked, market, venue, ledger, audit):
    market.set_price("BTC", "94")
    venue.place_effects = ["accept", "accept", "accept"]

    await _tick(monitor)

    env = ledger.get_envelope("t1")
    assert env.is_open
    assert env.close_pending is True
    assert audit.outcomes("close") == ["escalated"]


@pytest.mark.asyncio
async def test_failed_close_pending_write_places_no_order(
    monitor, tracked, market, venue, ledger, audit, monkeypatch
):
    market.set_price("BTC", "94")
    failing = Mock(side_effect=PersistenceFailure("database is locked"))
    monkeypatch.setattr(ledger, "try_set_close_pending", failing)

    await _tick(monitor)

    assert venue.placed == []
    assert ledger.get_envelope("t1").close_pending is False
    assert audit.outcomes("evaluate") == ["error"]

    monkeypatch.undo()
    await _tick(monitor)

    assert ledger.get_close_record("t1").exit_reason == TradeExitReason.STOP_LOSS
    assert len(venue.placed) == 1


@pytest.mark.asyncio
async def test_trade_lock_released_after_close(monitor, tracked, market):
    market.set_price("BTC", "94")

    await _tick(monitor)

    assert "t1" not in monitor._trade_locks
    assert "t1" not in monitor._close_tasks


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_orphan_adopted_and_closed_in_same_tick(monitor, venue, ledger, audit):
    venue.set_position("BTC", "sell", "2", "100")

    await _tick(monitor)

    closed = ledger.list_closed_trades()
    assert len(closed) == 1
    env, record = closed[0]
    assert env.trade_id.startswith("orphan_BTC_")
    assert record.exit_reason == TradeExitReason.ORPHAN_DEFAULT
    assert venue.placed[0].size == Decimal("2")
    assert audit.outcomes("adopt_orphan") == ["success"]


@pytest.mark.asyncio
async def test_dust_orphan_adopted_and_flattened(monitor, venue, market, ledger, audit):
    venue.set_position("ETH", "buy", "0.0001", "3000")
    market.set_price("ETH", "3000")

    await _tick(monitor)

    closed = ledger.list_closed_trades()
    assert len(closed) == 1
    assert closed[0][0].trade_id.startswith("orphan_ETH_")
    assert ledger.list_open_envelopes() == []
    assert venue.placed[0].size == Decimal("0.0001")
    assert venue.positions == {}
    assert audit.outcomes("adopt_orphan") == ["success"]


@pytest.mark.asyncio
async def test_orphan_without_venue_price_priced_from_market(monitor, venue, market, ledger):
    venue.positions["SOL"] = VenuePosition(symbol="SOL", side=TradeSide.SELL, size=Decimal("3"))
    market.set_price("SOL", "150")

    await _tick(monitor)

    env, record = ledger.list_closed_trades()[0]
    assert env.trade_id.startswith("orphan_SOL_")
    assert env.entry_price == Decimal("150")
    assert record.exit_reason == TradeExitReason.ORPHAN_DEFAULT


@pytest.mark.asyncio
async def test_missing_position_force_closed_for_review(monitor, ledger, make_envelope, venue, audit):
    ledger.create_envelope(make_envelope())
    venue.add_fill("BTC", "sell", "97", "1")

    await _tick(monitor)

    env = ledger.get_envelope("t1")
    assert env.status == TradeStatus.CLOSED
    assert env.needs_review is True
    record = ledger.get_close_record("t1")
    assert record.exit_reason == TradeExitReason.MANUAL
    assert record.exit_price == Decimal("97")
    assert venue.placed == []
    assert audit.outcomes("force_close") == ["success"]


@pytest.mark.asyncio
async def test_side_conflict_flagged_not_closed(monitor, ledger, make_envelope, venue, audit):
    ledger.create_envelope(make_envelope())
    venue.set_position("BTC", "sell", "1", "100")

    await _tick(monitor)

    assert ledger.get_envelope("t1").is_open
    assert venue.placed == []
    mismatches = [e for e in audit.events if e["outcome"] == "mismatch"]
    assert mismatches[0]["action"] == "reconcile"
    assert mismatches[0]["trade_id"] == "t1"


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_missing_market_data_skips_symbol_only(monitor, ledger, make_envelope, venue, market, audit):
    ledger.create_envelope(make_envelope(trade_id="eth-1", symbol="ETH"))
    venue.set_position("ETH", "buy", "1", "100")
    ledger.create_envelope(make_envelope())
    venue.set_position("BTC", "buy", "1", "100")
    market.set_price("BTC", "94")

    await _tick(monitor)

    assert ledger.get_envelope("eth-1").is_open
    assert ledger.get_envelope("t1").status == TradeStatus.CLOSED
    assert "ETH" in market.calls
    assert audit.outcomes("evaluate") == []


@pytest.mark.asyncio
async def test_venue_failure_audited_and_swallowed(monitor, tracked, venue, audit):
    venue.get_open_positions = AsyncMock(side_effect=RuntimeError("venue down"))

    await monitor.tick()

    assert audit.outcomes("tick") == ["error"]
    assert audit.events[-1]["message"] == "venue down"


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_interval_follows_open_envelopes(monitor, tracked, venue, tm_settings):
    assert monitor.interval_seconds == tm_settings.monitor_interval_seconds

    await _tick(monitor)
    assert monitor.interval_seconds == tm_settings.active_monitor_interval_seconds

    venue.positions.clear()
    await _tick(monitor)
    assert monitor.interval_seconds == tm_settings.monitor_interval_seconds


@pytest.mark.asyncio
async def test_start_and_stop(monitor):
    monitor.start()
    assert monitor.running

    await monitor.stop()

    assert not monitor.running
    assert monitor.stopping.is_set()


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_close(monitor, tracked, market, venue, ledger):
    market.set_price("BTC", "94")
    release = asyncio.Event()
    entered = asyncio.Event()
    place_order = venue.place_order

    async def slow_place_order(spec):
        entered.set()
        await release.wait()
        return await place_order(spec)

    venue.place_order = slow_place_order
    await monitor.tick()
    await asyncio.wait_for(entered.wait(), timeout=1)

    stopping = asyncio.create_task(monitor.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()
    assert ledger.get_envelope("t1").close_pending is True

    release.set()
    await asyncio.wait_for(stopping, timeout=1)

    assert ledger.get_envelope("t1").status == TradeStatus.CLOSED
    assert ledger.get_close_record("t1").exit_reason == TradeExitReason.STOP_LOSS


@pytest.mark.asyncio
async def test_tick_after_stop_is_noop(monitor, tracked, market):
    await monitor.stop()
    await monitor.tick()
    assert market.calls == []
