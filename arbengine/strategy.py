# arbengine/strategy.py
import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from .config import EngineSettings
from .models import Opportunity, OpportunityType, OrderBookTop
from .price_cache import PriceCache
from .risk_engine import RiskEngine

@dataclass(slots=True)
class _PairSignals:
    symbol: str
    spot: str
    derivatives: str
    opportunities: List[Opportunity]

class OpportunityScorer:
    """
    Cycle-driven strategy.
    Evaluates every (spot venue, derivatives venue, symbol) triple of one PriceCache
    snapshot and returns the opportunities that pass volume, profit and depth checks.

    Sizing: with sizing 'net' (default) the trade amount is shrunk by both taker
    fees before converting to base units, tradeAmount / (1 + 2*fee) / buyPrice.
    'gross' uses tradeAmount / buyPrice and so admits opportunities a fee-sized
    margin thinner.
    """
    def __init__(self, venues: Dict[str, object], settings: EngineSettings, logger,
                 risk: Optional[RiskEngine] = None, writer=None):
        self.venues = venues
        self.cfg = settings
        self.logger = logger
        self.risk = risk or RiskEngine(settings, logger)
        self.writer = writer
        self.spot_venues = [n for n, v in venues.items() if v.descriptor.is_spot]
        self.derivatives_venues = [n for n, v in venues.items() if v.descriptor.is_derivatives]

    def quantity(self, buy_price: float) -> float:
        """Base-currency quantity bought with the configured trade amount."""
        if self.cfg.net_sizing:
            return self.cfg.trade_amount / (1 + 2 * self.cfg.fee_rate) / buy_price
        return self.cfg.trade_amount / buy_price

    def net_profit(self, spread: float, quantity: float) -> float:
        return spread * quantity * (1 - 2 * self.cfg.fee_rate)

    def candidates(self, cache: PriceCache) -> List[_PairSignals]:
        """
        Pure part of the evaluation: volume filter, sizing and profit bounds.
        """
        out = []
        symbols = sorted({symbol for (_, symbol), _ in cache})
        for symbol in symbols:
            for spot in self.spot_venues:
                for deriv in self.derivatives_venues:
                    signals = self._score_pair(cache, symbol, spot, deriv)
                    if signals:
                        out.append(_PairSignals(symbol, spot, deriv, signals))
        return out

    def _score_pair(self, cache: PriceCache, symbol: str, spot: str, deriv: str) -> List[Opportunity]:
        s = cache.get(spot, symbol)
        d = cache.get(deriv, symbol)
        if s is None or d is None:
            return []

        if not (self.risk.volume_ok(s.volume) and self.risk.volume_ok(d.volume)):
            self.logger.debug(f"Low volume for {symbol}: {spot} ({s.volume}), {deriv} ({d.volume})")
            return []

        found = []

        # 1. ARBITRAGE: spot strictly cheaper than derivatives
        if s.price < d.price:
            qty = self.quantity(s.price)
            profit = self.net_profit(d.price - s.price, qty)
            if self.risk.profit_in_bounds(profit):
                found.append(Opportunity(
                    type=OpportunityType.ARBITRAGE, buy_venue=spot, sell_venue=deriv,
                    symbol=symbol, buy_price=s.price, sell_price=d.price,
                    profit=profit, amount=qty,
                ))

        # 2. CONVERGENCE: gap wide enough to bet on it closing, cheaper side buys.
        # One signal per pair and cycle, arbitrage wins.
        gap = abs(s.price - d.price)
        if not found and self.cfg.convergence_enabled and gap > self.cfg.convergence_threshold:
            low, high = (spot, deriv) if s.price < d.price else (deriv, spot)
            low_price, high_price = min(s.price, d.price), max(s.price, d.price)
            qty = self.quantity(low_price)
            profit = self.net_profit(gap, qty)
            if self.risk.profit_in_bounds(profit):
                found.append(Opportunity(
                    type=OpportunityType.CONVERGENCE, buy_venue=low, sell_venue=high,
                    symbol=symbol, buy_price=low_price, sell_price=high_price,
                    profit=profit, amount=qty,
                ))
        return found

    async def evaluate(self, cache: PriceCache) -> List[Opportunity]:
        """
        Full evaluation of one cycle. Order-book depth for each candidate pair
        is fetched concurrently; pairs without enough top-of-book size are skipped.
        """
        pairs = self.candidates(cache)
        if not pairs:
            return []

        books = await asyncio.gather(*(self._books(p) for p in pairs))

        opportunities = []
        for pair, result in zip(pairs, books):
            if result is None:
                continue
            spot_book, deriv_book = result
            for op in pair.opportunities:
                if spot_book.bid_size < op.amount or deriv_book.ask_size < op.amount:
                    self.logger.warning(
                        f"Insufficient depth for {op.symbol}: {pair.spot} bid {spot_book.bid_size}, "
                        f"{pair.derivatives} ask {deriv_book.ask_size}, need {op.amount:.6f}"
                    )
                    continue
                opportunities.append(op)
                if self.writer is not None:
                    self.writer.submit(op.marker())
        return opportunities

    async def _books(self, pair: _PairSignals) -> Optional[Tuple[OrderBookTop, OrderBookTop]]:
        try:
            spot_book, deriv_book = await asyncio.gather(
                self.venues[pair.spot].get_order_book(pair.symbol),
                self.venues[pair.derivatives].get_order_book(pair.symbol),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Order book fetch failed for {pair.symbol} ({pair.spot}/{pair.derivatives}): {e}")
            return None
        return spot_book, deriv_book
