# arbengine/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional
import time

class VenueKind(Enum):
    SPOT = "spot"
    DERIVATIVES = "derivatives"

class OrderSizing(Enum):
    """
    How a venue expects the amount of a market BUY order.
    QUANTITY = base currency units, NOTIONAL = quote currency value.
    """
    QUANTITY = "quantity"
    NOTIONAL = "notional"

class TradeSide(Enum):
    BUY = "buy"
    SELL = "sell"

class OpportunityType(Enum):
    ARBITRAGE = "arbitrage"
    CONVERGENCE = "convergence"

@dataclass(frozen=True, slots=True)
class VenueDescriptor:
    """
    Immutable identity of one configured venue.
    The order-sizing convention and minimum notional are declared here,
    never inferred from the venue name.
    """
    name: str
    kind: VenueKind
    exchange_id: str
    api_key: str = ""
    secret: str = ""
    password: str = ""
    buy_sizing: OrderSizing = OrderSizing.QUANTITY
    min_notional: float = 0.0

    @property
    def is_spot(self) -> bool:
        return self.kind is VenueKind.SPOT

    @property
    def is_derivatives(self) -> bool:
        return self.kind is VenueKind.DERIVATIVES

@dataclass(slots=True)
class Quote:
    symbol: str
    last_price: float
    base_volume: float

@dataclass(slots=True)
class BookLevel:
    price: float
    size: float

@dataclass(slots=True)
class OrderBookTop:
    best_bid: Optional[BookLevel]
    best_ask: Optional[BookLevel]

    @property
    def bid_size(self) -> float:
        return self.best_bid.size if self.best_bid else 0.0

    @property
    def ask_size(self) -> float:
        return self.best_ask.size if self.best_ask else 0.0

@dataclass(slots=True)
class PriceEntry:
    """Latest observed price/volume for one (venue, symbol) slot."""
    price: float
    volume: float
    timestamp: float

@dataclass(slots=True)
class PriceRecord:
    """
    Append-only price observation. When opportunity_type is set the row is a
    detected-opportunity marker and venue reads "<buy> -> <sell>".
    """
    symbol: str
    venue: str
    price: float
    volume: Optional[float] = None
    timestamp: float = field(default_factory=time.time)
    opportunity_type: Optional[OpportunityType] = None
    profit: Optional[float] = None
    id: Optional[int] = None

@dataclass(slots=True)
class Position:
    symbol: str
    venue: str
    amount: float
    buy_price: float
    stop_loss_price: float
    timestamp: float = field(default_factory=time.time)
    closed: bool = False
    sell_price: Optional[float] = None
    profit: Optional[float] = None
    id: Optional[int] = None

@dataclass(slots=True)
class TradeRecord:
    """Audit record of one attempted order, kept whether it filled or not."""
    symbol: str
    venue: str
    side: TradeSide
    amount: float
    price: float
    success: bool
    error: Optional[str] = None
    order_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    id: Optional[int] = None
    position_id: Optional[int] = None

@dataclass(slots=True)
class BalanceSnapshot:
    venue: str
    asset: str
    amount: float
    timestamp: float = field(default_factory=time.time)

@dataclass(frozen=True, slots=True)
class Opportunity:
    """
    Represents a qualified signal passed from the Scorer to Execution.
    amount is the base quantity the profit estimate was computed for.
    """
    type: OpportunityType
    buy_venue: str
    sell_venue: str
    symbol: str
    buy_price: float
    sell_price: float
    profit: float
    amount: float

    def marker(self, timestamp: Optional[float] = None) -> PriceRecord:
        """Audit row for this opportunity in the price log."""
        return PriceRecord(
            symbol=self.symbol,
            venue=f"{self.buy_venue} -> {self.sell_venue}",
            price=self.sell_price - self.buy_price,
            timestamp=timestamp if timestamp is not None else time.time(),
            opportunity_type=self.type,
            profit=self.profit,
        )

@dataclass(frozen=True, slots=True)
class OrderPlan:
    """
    Concrete order sizing for one leg.
    order_amount is what gets sent to the venue (base units or quote notional),
    quantity is always the base-currency equivalent.
    """
    quantity: float
    order_amount: float
    sizing: OrderSizing
    clamped: bool = False

# Balances keyed by asset, e.g. {'USDT': 100.0, 'BTC': 0.01}
BalanceMap = Dict[str, float]
