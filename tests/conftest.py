"""Shared fixtures: an in-memory venue honouring the MarketVenue contract and a temp store."""

from __future__ import annotations

import logging
from pathlib import Path

import ccxt.async_support as ccxt
import pytest

from arbengine.config import EngineSettings
from arbengine.models import (BookLevel, OrderBookTop, OrderSizing, Quote, VenueDescriptor,
                              VenueKind)
from arbengine.store import Store


class FakeVenue:
    """Scriptable venue: quotes, books and order outcomes are set per test."""

    def __init__(self, name: str, kind: VenueKind = VenueKind.SPOT,
                 buy_sizing: OrderSizing = OrderSizing.QUANTITY, min_notional: float = 0.0,
                 api_key: str = ""):
        self.descriptor = VenueDescriptor(
            name=name, kind=kind, exchange_id=name, api_key=api_key,
            buy_sizing=buy_sizing, min_notional=min_notional,
        )
        self.quotes: dict = {}
        self.books: dict = {}
        self.balance: dict = {}
        self.buy_error: Exception | None = None
        self.sell_error: Exception | None = None
        self.buys: list = []
        self.sells: list = []
        self.cancelled: list = []
        self.quote_calls: list = []
        self.book_calls: list = []

    @property
    def name(self) -> str:
        return self.descriptor.name

    def set_quote(self, symbol: str, price: float, volume: float = 1000.0):
        self.quotes[symbol] = Quote(symbol, price, volume)

    def set_book(self, symbol: str, bid_size: float, ask_size: float, price: float = 100.0):
        self.books[symbol] = OrderBookTop(BookLevel(price, bid_size), BookLevel(price, ask_size))

    async def get_quote(self, symbol: str) -> Quote:
        self.quote_calls.append(symbol)
        quote = self.quotes.get(symbol)
        if quote is None:
            raise ccxt.BadSymbol(f"{self.name} does not list {symbol}")
        if isinstance(quote, Exception):
            raise quote
        return quote

    async def get_order_book(self, symbol: str) -> OrderBookTop:
        self.book_calls.append(symbol)
        book = self.books.get(symbol)
        if isinstance(book, Exception):
            raise book
        if book is None:
            return OrderBookTop(BookLevel(1.0, 1e9), BookLevel(1.0, 1e9))
        return book

    async def place_market_buy(self, symbol: str, amount: float):
        self.buys.append((symbol, amount))
        if self.buy_error is not None:
            raise self.buy_error
        return {"id": f"{self.name}-buy-{len(self.buys)}"}

    async def place_market_sell(self, symbol: str, amount: float):
        self.sells.append((symbol, amount))
        if self.sell_error is not None:
            raise self.sell_error
        return {"id": f"{self.name}-sell-{len(self.sells)}"}

    async def get_balance(self):
        if isinstance(self.balance, Exception):
            raise self.balance
        return dict(self.balance)

    async def get_open_orders(self, symbol=None):
        return []

    async def cancel_order(self, order_id: str, symbol: str):
        self.cancelled.append((order_id, symbol))
        return {"id": order_id, "status": "canceled"}


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("arbengine.tests")


@pytest.fixture
def store(tmp_path: Path) -> Store:
    s = Store(db_path=tmp_path / "test.db")
    yield s
    s.close()


@pytest.fixture
def spot() -> FakeVenue:
    return FakeVenue("spot-a", VenueKind.SPOT)


@pytest.fixture
def perp() -> FakeVenue:
    return FakeVenue("perp-a", VenueKind.DERIVATIVES)


@pytest.fixture
def venues(spot: FakeVenue, perp: FakeVenue) -> dict:
    return {spot.name: spot, perp.name: perp}


def make_settings(**overrides) -> EngineSettings:
    base = dict(
        min_volume=100.0, min_profit=1.0, max_profit=200.0, trade_amount=1000.0,
        fee_rate=0.001, sizing="net", convergence_threshold=10.0, convergence_enabled=True,
        stop_loss_percent=5.0, stop_loss_timeout_ms=3_600_000, convergence_range=5.0,
    )
    base.update(overrides)
    return EngineSettings(**base)


class ListWriter:
    """Collects submitted price records instead of writing them."""

    def __init__(self):
        self.records = []

    def submit(self, record):
        self.records.append(record)
