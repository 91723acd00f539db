# arbengine/price_cache.py
from typing import Dict, Iterator, Optional, Tuple
from .models import PriceEntry

class PriceCache:
    """
    Latest price/volume per (venue, symbol) for one poll cycle.
    Owned by the Poller for the cycle that filled it and handed to the Scorer;
    never shared across cycles.
    """
    def __init__(self, cycle_id: int = 0):
        self.cycle_id = cycle_id
        self._entries: Dict[Tuple[str, str], PriceEntry] = {}

    def put(self, venue: str, symbol: str, entry: PriceEntry):
        self._entries[(venue, symbol)] = entry

    def get(self, venue: str, symbol: str) -> Optional[PriceEntry]:
        return self._entries.get((venue, symbol))

    def prices(self) -> Dict[str, Dict[str, float]]:
        """{'BTC/USDT': {'binance': 65000.0, ...}} for display."""
        out: Dict[str, Dict[str, float]] = {}
        for (venue, symbol), entry in self._entries.items():
            out.setdefault(symbol, {})[venue] = entry.price
        return out

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Tuple[Tuple[str, str], PriceEntry]]:
        return iter(sorted(self._entries.items()))
