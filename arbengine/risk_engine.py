# arbengine/risk_engine.py
import math
import time
from dataclasses import dataclass
from typing import Optional
from .config import EngineSettings
from .models import Position

@dataclass(slots=True)
class ExitSignal:
    """Outcome of checking one open position against its exit conditions."""
    stop_loss: bool
    timed_out: bool
    converged: bool
    spot_price: float
    derivatives_price: float

    @property
    def triggered(self) -> bool:
        return self.stop_loss or self.timed_out or self.converged

    @property
    def reason(self) -> str:
        if self.converged:
            return "convergence"
        if self.stop_loss:
            return "stop-loss"
        if self.timed_out:
            return "timeout"
        return "hold"

class RiskEngine:
    """
    Enforces the numeric limits of the strategy and validates market data.
    Separates the decision 'Is this number acceptable?' from the logic that produced it.
    All bounds are inclusive.
    """
    def __init__(self, settings: Optional[EngineSettings] = None, logger=None):
        self.cfg = settings or EngineSettings()
        self.logger = logger

    def validate_quote(self, price, volume) -> bool:
        """
        Zero, negative, NaN or missing prices are 'no data'.
        """
        for value in (price, volume):
            if value is None or not isinstance(value, (int, float)) or math.isnan(value) or math.isinf(value):
                return False
        return price > 0 and volume >= 0

    def volume_ok(self, volume: float) -> bool:
        return volume >= self.cfg.min_volume

    def profit_in_bounds(self, profit: float) -> bool:
        return self.cfg.min_profit <= profit <= self.cfg.max_profit

    def stop_loss_price(self, buy_price: float) -> float:
        return buy_price * (1 - self.cfg.stop_loss_percent / 100)

    def realized_profit(self, buy_price: float, exit_price: float, amount: float) -> float:
        return (exit_price - buy_price) * amount * (1 - 2 * self.cfg.fee_rate)

    def exit_signal(self, position: Position, spot_price: float, derivatives_price: float,
                    now: Optional[float] = None) -> ExitSignal:
        """
        Stop-loss: spot at or under the stop price, or the position outlived the timeout.
        Convergence: the spot/derivatives gap is inside convergence_range.
        """
        now = time.time() if now is None else now
        stop_price = position.stop_loss_price or self.stop_loss_price(position.buy_price)
        return ExitSignal(
            stop_loss=spot_price <= stop_price,
            timed_out=(now - position.timestamp) > self.cfg.stop_loss_timeout_sec,
            converged=abs(spot_price - derivatives_price) <= self.cfg.convergence_range,
            spot_price=spot_price,
            derivatives_price=derivatives_price,
        )
