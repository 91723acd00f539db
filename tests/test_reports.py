"""Tests for the rich report tables."""

from __future__ import annotations

import pytest
from rich.layout import Layout

from arbengine.models import Position, TradeRecord, TradeSide
from arbengine.price_cache import PriceCache
from arbengine.reports import (failed_orders_table, generate_dashboard, open_orders_table,
                               portfolio, volume_stats_table)

from conftest import make_settings


def _open(store, symbol, venue="spot-a", amount=2.0) -> Position:
    pos = Position(symbol=symbol, venue=venue, amount=amount, buy_price=100.0,
                   stop_loss_price=95.0, timestamp=1.0)
    store.create_position(pos)
    return pos


class TestPortfolio:
    @pytest.mark.asyncio
    async def test_values_positions_at_current_price(self, spot, venues, store):
        _open(store, "BTC/USDT")
        _open(store, "ETH/USDT", amount=10.0)
        spot.set_quote("BTC/USDT", 110.0)
        spot.set_quote("ETH/USDT", 5.0)

        table, total = await portfolio(store, venues)

        assert table.row_count == 2
        assert total == pytest.approx(2.0 * 110.0 + 10.0 * 5.0)

    @pytest.mark.asyncio
    async def test_unquoted_positions_are_listed_without_value(self, spot, venues, store):
        _open(store, "BTC/USDT")
        _open(store, "XRP/USDT", venue="spot-gone")
        spot.set_quote("BTC/USDT", 110.0)

        table, total = await portfolio(store, venues)

        assert table.row_count == 2
        assert total == pytest.approx(220.0)

    @pytest.mark.asyncio
    async def test_venue_filter(self, spot, venues, store):
        _open(store, "BTC/USDT")
        _open(store, "BTC/USDT", venue="spot-b")
        spot.set_quote("BTC/USDT", 110.0)

        table, _ = await portfolio(store, venues, "spot-b")

        assert table.row_count == 1


def test_tables_have_one_row_per_item():
    failed = [TradeRecord(symbol="BTC/USDT", venue="spot-a", side=TradeSide.SELL, amount=1.0,
                          price=100.0, success=False, error="rejected", id=1, timestamp=1.0)]
    assert failed_orders_table(failed).row_count == 1
    assert open_orders_table({"spot-a": [{"id": "1", "symbol": "BTC/USDT"}, {"id": "2"}]}).row_count == 2
    stats = [{"venue": "spot-a", "symbol": "BTC/USDT", "avg_volume": 2.0,
              "min_volume": 1.0, "max_volume": 3.0, "samples": 2}]
    assert volume_stats_table(stats).row_count == 1


def test_dashboard_renders_from_bot_state(venues, store):
    class _Bot:
        pass

    bot = _Bot()
    bot.venues = venues
    bot.symbols = ["BTC/USDT"]
    bot.last_cache = PriceCache(3)
    bot.last_opportunities = []
    bot.store = store
    bot.settings = make_settings()
    _open(store, "BTC/USDT")

    assert isinstance(generate_dashboard(bot), Layout)
