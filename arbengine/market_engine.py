# arbengine/market_engine.py
import asyncio
import math
import ccxt.async_support as ccxt
import ccxt.pro as ccxtpro
from typing import Dict, List, Optional, Any
from .models import (VenueDescriptor, Quote, BookLevel, OrderBookTop,
                     BalanceMap, OrderSizing)
from .config import ConfigurationError

class InvalidQuote(ValueError):
    """Venue answered but the ticker carries no usable price."""

def is_transient(exc: BaseException) -> bool:
    """
    Timeouts, rate limits and maintenance windows. Everything else
    (bad symbol, malformed payload) is treated as 'no data'.
    """
    return isinstance(exc, (ccxt.NetworkError, asyncio.TimeoutError))

def supports_streaming(descriptor: VenueDescriptor) -> bool:
    """Capability probe: does ccxt.pro offer websocket quotes for this venue."""
    return descriptor.exchange_id in getattr(ccxtpro, 'exchanges', [])

def _usable(value) -> bool:
    return value is not None and not (isinstance(value, float) and math.isnan(value)) and value > 0

class CcxtVenue:
    """
    MarketVenue implementation on top of a ccxt async client.

    Contract used by the engine:
      get_quote, get_order_book, place_market_buy, place_market_sell,
      get_balance, get_open_orders, cancel_order
    plus the static metadata in self.descriptor (kind, buy_sizing, min_notional).
    """
    def __init__(self, descriptor: VenueDescriptor, client: ccxt.Exchange, timeout_ms: int = 10_000):
        self.descriptor = descriptor
        self.client = client
        self.timeout_sec = timeout_ms / 1000.0
        self.markets: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self.descriptor.name

    async def load_markets(self) -> Dict[str, Any]:
        self.markets = await self._bounded(self.client.load_markets())
        return self.markets

    def market_symbol(self, symbol: str) -> str:
        """
        Maps 'BTC/USDT' to the venue's own listing.
        Derivatives venues list linear perpetuals as 'BTC/USDT:USDT'.
        """
        if self.descriptor.is_spot or ':' in symbol or not self.markets:
            return symbol
        quote = symbol.split('/')[-1]
        settled = f"{symbol}:{quote}"
        return settled if settled in self.markets else symbol

    def listed_symbols(self) -> List[str]:
        """Unified 'BASE/QUOTE' symbols this venue trades in its own market type."""
        out = []
        for m in self.markets.values():
            if not m.get('active', True):
                continue
            if self.descriptor.is_spot and not m.get('spot'):
                continue
            if self.descriptor.is_derivatives and not (m.get('swap') or m.get('future')):
                continue
            out.append(f"{m['base']}/{m['quote']}")
        return sorted(set(out))

    def supports(self, symbol: str) -> bool:
        if not self.markets:
            return True
        return self.market_symbol(symbol) in self.markets

    async def get_quote(self, symbol: str) -> Quote:
        ticker = await self._bounded(self.client.fetch_ticker(self.market_symbol(symbol)))
        last = ticker.get('last')
        if not _usable(last):
            raise InvalidQuote(f"{self.name} returned no last price for {symbol}")
        volume = ticker.get('baseVolume') or 0.0
        return Quote(symbol=symbol, last_price=float(last), base_volume=float(volume))

    async def get_order_book(self, symbol: str) -> OrderBookTop:
        book = await self._bounded(self.client.fetch_order_book(self.market_symbol(symbol), 5))
        bids, asks = book.get('bids') or [], book.get('asks') or []
        return OrderBookTop(
            best_bid=BookLevel(float(bids[0][0]), float(bids[0][1])) if bids else None,
            best_ask=BookLevel(float(asks[0][0]), float(asks[0][1])) if asks else None,
        )

    async def place_market_buy(self, symbol: str, amount: float) -> Dict[str, Any]:
        """
        amount is base quantity or quote notional depending on descriptor.buy_sizing.
        Order calls rely on the client's own timeout: cancelling an in-flight
        order request would leave its outcome unknown.
        """
        params = {}
        if self.descriptor.buy_sizing is OrderSizing.NOTIONAL:
            # ccxt treats 'amount' as cost for market buys when this is disabled
            params['createMarketBuyOrderRequiresPrice'] = False
        return await self.client.create_order(self.market_symbol(symbol), 'market', 'buy', amount, None, params)

    async def place_market_sell(self, symbol: str, amount: float) -> Dict[str, Any]:
        return await self.client.create_order(self.market_symbol(symbol), 'market', 'sell', amount)

    async def get_balance(self) -> BalanceMap:
        balance = await self._bounded(self.client.fetch_balance())
        return {k: float(v) for k, v in (balance.get('free') or {}).items() if v}

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._bounded(self.client.fetch_open_orders(self.market_symbol(symbol) if symbol else None))

    async def cancel_order(self, order_id: str, symbol: str) -> Dict[str, Any]:
        return await self.client.cancel_order(order_id, self.market_symbol(symbol))

    async def close(self):
        await self.client.close()

    async def _bounded(self, coro):
        try:
            return await asyncio.wait_for(coro, self.timeout_sec)
        except asyncio.TimeoutError:
            raise ccxt.RequestTimeout(f"{self.name} did not answer within {self.timeout_sec:.1f}s")


def create_client(descriptor: VenueDescriptor, timeout_ms: int, sandbox: bool) -> ccxt.Exchange:
    ex_class = getattr(ccxt, descriptor.exchange_id, None)
    if ex_class is None:
        raise ConfigurationError(f"Venue {descriptor.name}: ccxt has no exchange '{descriptor.exchange_id}'")
    client = ex_class({
        'apiKey': descriptor.api_key,
        'secret': descriptor.secret,
        'password': descriptor.password,  # OKX/KuCoin require password
        'timeout': timeout_ms,
        'enableRateLimit': True,
        'options': {
            'defaultType': 'spot' if descriptor.is_spot else 'swap',
            'adjustForTimeDifference': True,
        },
    })
    if sandbox:
        client.set_sandbox_mode(True)
    return client


class MarketEngine:
    """
    Manages REST API connections to venues.
    Responsible for initial diagnostics, authentication verification,
    and providing the venue handles to the Poller, Execution and Supervisor.
    """
    def __init__(self, descriptors: List[VenueDescriptor], logger, timeout_ms: int = 10_000, sandbox: bool = False):
        self.descriptors = descriptors
        self.venues: Dict[str, CcxtVenue] = {}
        self.timeout_ms = timeout_ms
        self.sandbox = sandbox
        self.logger = logger

    async def initialize(self, check_auth: bool = True) -> Dict[str, CcxtVenue]:
        """
        Connects to venues and performs a connectivity test.
        Venues failing the diagnostic are dropped; if none survive the engine cannot proceed.
        """
        self.logger.info("📡 TESTING VENUE CONNECTIONS...")

        for desc in self.descriptors:
            client = create_client(desc, self.timeout_ms, self.sandbox)
            venue = CcxtVenue(desc, client, self.timeout_ms)
            label = f"{desc.name.upper():<14}"
            try:
                # --- PUBLIC API: connectivity and market list ---
                await venue.load_markets()

                # --- PRIVATE API: key validity, only when keys are configured ---
                if check_auth and desc.api_key:
                    await venue.get_balance()

                self.venues[desc.name] = venue
                stream = "stream" if supports_streaming(desc) else "rest"
                self.logger.info(f"   ✅ {label} | {desc.kind.value:<11} | {stream} | {len(venue.markets)} markets")

            except ccxt.AuthenticationError:
                self.logger.critical(f"   ❌ {label} | AUTH FAILED: Invalid API Key or Secret.")
                await client.close()
            except ccxt.PermissionDenied:
                self.logger.critical(f"   ❌ {label} | PERMISSION DENIED: Key missing trading or IP whitelist permissions.")
                await client.close()
            except ccxt.AccountSuspended:
                self.logger.critical(f"   ❌ {label} | ACCOUNT SUSPENDED: Contact support immediately.")
                await client.close()
            except ccxt.RequestTimeout:
                self.logger.error(f"   ❌ {label} | TIMEOUT: Venue API is slow or down.")
                await client.close()
            except ccxt.ExchangeNotAvailable:
                self.logger.error(f"   ❌ {label} | MAINTENANCE: Venue is currently offline.")
                await client.close()
            except ccxt.BaseError as e:
                self.logger.critical(f"   ❌ {label} | UNKNOWN ERROR: {e}")
                await client.close()

        if not self.venues:
            raise ConfigurationError("No venue passed the connection diagnostic")
        return self.venues

    def compatible_symbols(self) -> Dict[str, List[str]]:
        """
        Symbols listed on at least two connected venues, mapped to those venue names.
        """
        listed: Dict[str, List[str]] = {}
        for name, venue in self.venues.items():
            for symbol in venue.listed_symbols():
                listed.setdefault(symbol, []).append(name)
        return {s: names for s, names in sorted(listed.items()) if len(names) >= 2}

    async def shutdown(self):
        """
        Gracefully closes all REST API sessions.
        """
        for venue in self.venues.values():
            await venue.close()
