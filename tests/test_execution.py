"""Tests for execution: order sizing, leg sequencing and trade recording."""

from __future__ import annotations

from unittest.mock import AsyncMock

import ccxt.async_support as ccxt
import pytest

from arbengine.execution import ExecutionEngine, cancel_recorded_order, plan_buy, plan_exact, plan_sell
from arbengine.models import (Opportunity, OpportunityType, OrderSizing, TradeSide,
                              VenueDescriptor, VenueKind)

from conftest import FakeVenue, make_settings


def _op(**overrides) -> Opportunity:
    base = dict(
        type=OpportunityType.ARBITRAGE, buy_venue="spot-a", sell_venue="perp-a",
        symbol="BTC/USDT", buy_price=100.0, sell_price=110.0, profit=99.6, amount=9.98,
    )
    base.update(overrides)
    return Opportunity(**base)


def _engine(venues, store, logger, audit=None) -> ExecutionEngine:
    return ExecutionEngine(venues, store, make_settings(), logger, audit=audit)


# ---------------------------------------------------------------------------
# Order plans
# ---------------------------------------------------------------------------


class TestPlans:
    def test_quantity_venue_buys_in_base_units(self):
        d = VenueDescriptor(name="a", kind=VenueKind.SPOT, exchange_id="a")
        plan = plan_buy(d, 2.0, 50.0)
        assert plan.sizing is OrderSizing.QUANTITY
        assert plan.order_amount == 2.0
        assert plan.quantity == 2.0
        assert not plan.clamped

    def test_notional_venue_buys_in_quote_units(self):
        d = VenueDescriptor(name="a", kind=VenueKind.SPOT, exchange_id="a", buy_sizing=OrderSizing.NOTIONAL)
        plan = plan_buy(d, 2.0, 50.0)
        assert plan.sizing is OrderSizing.NOTIONAL
        assert plan.order_amount == pytest.approx(100.0)
        assert plan.quantity == 2.0

    def test_buy_below_minimum_is_raised(self):
        d = VenueDescriptor(name="a", kind=VenueKind.SPOT, exchange_id="a", min_notional=10.0)
        plan = plan_buy(d, 0.01, 100.0)
        assert plan.clamped
        assert plan.quantity == pytest.approx(0.1)
        assert plan.order_amount == pytest.approx(0.1)

    def test_notional_buy_below_minimum_is_raised(self):
        d = VenueDescriptor(name="a", kind=VenueKind.SPOT, exchange_id="a",
                            buy_sizing=OrderSizing.NOTIONAL, min_notional=10.0)
        plan = plan_buy(d, 0.01, 100.0)
        assert plan.clamped
        assert plan.order_amount == pytest.approx(10.0)

    def test_sell_is_base_units_and_clamped(self):
        d = VenueDescriptor(name="a", kind=VenueKind.DERIVATIVES, exchange_id="a",
                            buy_sizing=OrderSizing.NOTIONAL, min_notional=5.0)
        plan = plan_sell(d, 0.01, 100.0)
        assert plan.sizing is OrderSizing.QUANTITY
        assert plan.clamped
        assert plan.order_amount == pytest.approx(0.05)

    def test_sell_above_minimum_untouched(self):
        d = VenueDescriptor(name="a", kind=VenueKind.DERIVATIVES, exchange_id="a", min_notional=5.0)
        plan = plan_sell(d, 1.0, 100.0)
        assert not plan.clamped
        assert plan.order_amount == 1.0

    def test_exact_plan_never_resizes(self):
        d = VenueDescriptor(name="a", kind=VenueKind.SPOT, exchange_id="a", min_notional=5.0)
        plan = plan_exact(d, TradeSide.SELL, 0.06, 95.0)
        assert (plan.quantity, plan.order_amount, plan.clamped) == (0.06, 0.06, False)
        assert plan_exact(d, TradeSide.SELL, 0.05, 95.0) is None

    def test_exact_notional_buy_sends_cost(self):
        d = VenueDescriptor(name="a", kind=VenueKind.DERIVATIVES, exchange_id="a",
                            buy_sizing=OrderSizing.NOTIONAL)
        plan = plan_exact(d, TradeSide.BUY, 2.0, 50.0)
        assert plan.sizing is OrderSizing.NOTIONAL
        assert plan.order_amount == pytest.approx(100.0)
        assert plan_exact(d, TradeSide.SELL, 2.0, 50.0).order_amount == 2.0


# ---------------------------------------------------------------------------
# Two-leg execution
# ---------------------------------------------------------------------------


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_records_both_legs_and_keeps_position_open(self, spot, perp, venues, store, logger):
        position = await _engine(venues, store, logger).execute(_op())

        assert spot.buys == [("BTC/USDT", 9.98)]
        assert perp.sells == [("BTC/USDT", 9.98)]

        trades = store.trades()
        assert [(t.venue, t.side, t.success) for t in trades] == [
            ("spot-a", TradeSide.BUY, True),
            ("perp-a", TradeSide.SELL, True),
        ]
        assert trades[0].order_id == "spot-a-buy-1"
        assert trades[1].order_id == "perp-a-sell-1"
        assert [t.position_id for t in trades] == [position.id, position.id]

        stored = store.get_position(position.id)
        assert stored is not None
        assert not stored.closed
        assert stored.venue == "spot-a"
        assert stored.amount == pytest.approx(9.98)
        assert stored.stop_loss_price == pytest.approx(95.0)

    @pytest.mark.asyncio
    async def test_buy_failure_records_one_failed_attempt_and_no_sell(self, spot, perp, venues, store, logger):
        spot.buy_error = ccxt.InsufficientFunds("not enough USDT")

        position = await _engine(venues, store, logger).execute(_op())

        assert perp.sells == []
        trades = store.trades()
        assert len(trades) == 1
        assert trades[0].side is TradeSide.BUY
        assert not trades[0].success
        assert "not enough USDT" in trades[0].error
        assert trades[0].order_id is None
        assert store.get_position(position.id) is not None

    @pytest.mark.asyncio
    async def test_sell_failure_leaves_position_open(self, spot, perp, venues, store, logger):
        perp.sell_error = ccxt.ExchangeNotAvailable("maintenance")

        position = await _engine(venues, store, logger).execute(_op())

        trades = store.trades()
        assert [(t.side, t.success) for t in trades] == [(TradeSide.BUY, True), (TradeSide.SELL, False)]
        assert store.trades(success=False)[0].venue == "perp-a"
        assert not store.get_position(position.id).closed

    @pytest.mark.asyncio
    async def test_position_exists_before_first_order(self, spot, venues, store, logger):
        seen = []

        async def buy(symbol, amount):
            seen.append(len(store.positions()))
            return {"id": "x"}

        spot.place_market_buy = buy
        await _engine(venues, store, logger).execute(_op())
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_clamped_quantity_is_recorded_on_position(self, logger, store):
        spot = FakeVenue("spot-a", VenueKind.SPOT, min_notional=2000.0)
        perp = FakeVenue("perp-a", VenueKind.DERIVATIVES)
        venues = {spot.name: spot, perp.name: perp}

        position = await _engine(venues, store, logger).execute(_op())

        assert position.amount == pytest.approx(20.0)
        assert spot.buys[0][1] == pytest.approx(20.0)
        assert perp.sells[0][1] == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_notional_venue_receives_quote_amount(self, logger, store):
        spot = FakeVenue("spot-a", VenueKind.SPOT, buy_sizing=OrderSizing.NOTIONAL)
        perp = FakeVenue("perp-a", VenueKind.DERIVATIVES)
        venues = {spot.name: spot, perp.name: perp}

        await _engine(venues, store, logger).execute(_op())

        assert spot.buys[0][1] == pytest.approx(998.0)
        assert perp.sells[0][1] == pytest.approx(9.98)

    @pytest.mark.asyncio
    async def test_non_spot_buy_leg_is_rejected(self, venues, store, logger):
        engine = _engine(venues, store, logger)
        op = _op(type=OpportunityType.CONVERGENCE, buy_venue="perp-a", sell_venue="spot-a")
        assert not engine.is_executable(op)
        with pytest.raises(ValueError):
            await engine.execute(op)
        assert store.positions() == []

    @pytest.mark.asyncio
    async def test_unknown_venue_is_not_executable(self, venues, store, logger):
        engine = _engine(venues, store, logger)
        assert not engine.is_executable(_op(sell_venue="perp-z"))

    @pytest.mark.asyncio
    async def test_every_attempt_reaches_the_audit_log(self, spot, perp, venues, store, logger):
        audit = AsyncMock()
        perp.sell_error = ccxt.NetworkError("reset")

        await _engine(venues, store, logger, audit=audit).execute(_op())

        assert audit.log_trade.await_count == 2
        logged = [c.args[0] for c in audit.log_trade.await_args_list]
        assert [t.success for t in logged] == [True, False]


# ---------------------------------------------------------------------------
# Manual cancel
# ---------------------------------------------------------------------------


class TestCancelRecordedOrder:
    @pytest.mark.asyncio
    async def test_cancels_and_marks_record(self, spot, perp, venues, store, logger):
        await _engine(venues, store, logger).execute(_op())
        trade = store.trades()[0]

        assert await cancel_recorded_order(store, venues, trade.id, logger)

        assert spot.cancelled == [("spot-a-buy-1", "BTC/USDT")]
        updated = store.get_trade(trade.id)
        assert not updated.success
        assert updated.error == "cancelled manually"

    @pytest.mark.asyncio
    async def test_unknown_trade(self, venues, store, logger):
        assert not await cancel_recorded_order(store, venues, 42, logger)

    @pytest.mark.asyncio
    async def test_trade_without_order_id(self, spot, venues, store, logger):
        spot.buy_error = ccxt.InsufficientFunds("no funds")
        await _engine(venues, store, logger).execute(_op())
        trade = store.trades()[0]

        assert not await cancel_recorded_order(store, venues, trade.id, logger)
        assert spot.cancelled == []

    @pytest.mark.asyncio
    async def test_venue_error_keeps_record(self, spot, venues, store, logger):
        await _engine(venues, store, logger).execute(_op())
        trade = store.trades()[0]
        spot.cancel_order = AsyncMock(side_effect=ccxt.OrderNotFound("gone"))

        assert not await cancel_recorded_order(store, venues, trade.id, logger)
        assert store.get_trade(trade.id).success

    @pytest.mark.asyncio
    async def test_disconnected_venue(self, venues, store, logger):
        await _engine(venues, store, logger).execute(_op())
        trade = store.trades()[0]
        assert not await cancel_recorded_order(store, {}, trade.id, logger)
