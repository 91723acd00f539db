# arbengine/poller.py
import asyncio
import time
from typing import Dict, List, Optional
from .models import PriceEntry, PriceRecord
from .price_cache import PriceCache
from .market_engine import is_transient
from .risk_engine import RiskEngine

class Poller:
    """
    Fetches the last price and 24h base volume of every symbol on every venue.
    Venues are polled concurrently, symbols within one venue sequentially
    to keep each venue's request rate bounded.
    """
    def __init__(self, venues: Dict[str, object], symbols: List[str], logger,
                 writer=None, risk: Optional[RiskEngine] = None):
        self.venues = venues
        self.symbols = symbols
        self.logger = logger
        self.writer = writer
        self.risk = risk or RiskEngine()
        self.cycle_id = 0
        # Per-venue symbol list after dropping symbols the venue does not list
        self.venue_symbols: Dict[str, List[str]] = {name: list(symbols) for name in venues}

    def prune_unsupported(self):
        """
        Drops symbols a venue does not list so they are never requested.
        Needs the venue's markets loaded; venues without a market list keep everything.
        """
        for name, venue in self.venues.items():
            supports = getattr(venue, 'supports', None)
            if supports is None:
                continue
            kept = []
            for symbol in self.symbols:
                if supports(symbol):
                    kept.append(symbol)
                else:
                    self.logger.warning(f"Symbol {symbol} not supported on {name}")
            self.venue_symbols[name] = kept

    async def poll_once(self) -> PriceCache:
        """
        One cycle. Returns a fresh cache holding only the slots that succeeded.
        """
        self.cycle_id += 1
        cache = PriceCache(self.cycle_id)
        await asyncio.gather(
            *(self._poll_venue(name, venue, cache) for name, venue in self.venues.items())
        )
        self.logger.debug(f"Cycle {self.cycle_id}: {len(cache)} price slots filled")
        return cache

    async def _poll_venue(self, name: str, venue, cache: PriceCache):
        for symbol in self.venue_symbols.get(name, self.symbols):
            try:
                quote = await venue.get_quote(symbol)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if is_transient(e):
                    self.logger.error(f"Ticker fetch failed for {symbol} on {name}: {e}")
                else:
                    self.logger.debug(f"No data for {symbol} on {name}: {e}")
                continue

            if not self.risk.validate_quote(quote.last_price, quote.base_volume):
                self.logger.debug(f"Discarding unusable quote for {symbol} on {name}: {quote}")
                continue

            now = time.time()
            cache.put(name, symbol, PriceEntry(quote.last_price, quote.base_volume, now))
            if self.writer is not None:
                self.writer.submit(PriceRecord(
                    symbol=symbol, venue=name, price=quote.last_price,
                    volume=quote.base_volume, timestamp=now,
                ))
