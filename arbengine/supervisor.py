# arbengine/supervisor.py
import asyncio
import time
from typing import Callable, Dict, Optional
from .config import EngineSettings
from .execution import OrderDesk, plan_exact
from .models import Position, TradeRecord, TradeSide
from .risk_engine import RiskEngine

class PositionSupervisor:
    """
    Watches open positions and unwinds them on convergence, stop-loss or timeout.

    Unwind order: sell the held base on the spot venue, then buy back the hedge
    on the derivatives venue. The position closes only when both legs succeed.
    A spot-side failure skips the hedge leg and the position is retried next
    cycle. A hedge-side failure after a successful spot sale leaves it open;
    later cycles find the recorded spot sale and retry only the buy-back.
    """
    def __init__(self, venues: Dict[str, object], store, settings: EngineSettings, logger,
                 audit=None, risk: Optional[RiskEngine] = None,
                 clock: Callable[[], float] = time.time):
        self.venues = venues
        self.store = store
        self.cfg = settings
        self.logger = logger
        self.risk = risk or RiskEngine(settings, logger)
        self.desk = OrderDesk(store, logger, audit)
        self.clock = clock

    @property
    def hedge_venue(self):
        """First configured derivatives venue."""
        for venue in self.venues.values():
            if venue.descriptor.is_derivatives:
                return venue
        return None

    async def run_cycle(self) -> int:
        """
        One pass over every open position. Returns how many were closed.
        """
        positions = await asyncio.to_thread(self.store.open_positions)
        if not positions:
            return 0
        self.logger.info(f"Supervising {len(positions)} open positions")

        closed = 0
        for position in positions:
            try:
                if await self.check_position(position):
                    closed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception(f"Position #{position.id} check failed")
        return closed

    async def check_position(self, position: Position) -> bool:
        spot = self.venues.get(position.venue)
        deriv = self.hedge_venue
        if spot is None or not spot.descriptor.is_spot or deriv is None:
            self.logger.debug(f"Position #{position.id}: venue {position.venue} is not a connected spot venue, skipping")
            return False

        # State may have moved since the list was loaded
        current = await asyncio.to_thread(self.store.get_position, position.id)
        if current is None or current.closed:
            return False

        try:
            spot_quote, deriv_quote = await asyncio.gather(
                spot.get_quote(current.symbol), deriv.get_quote(current.symbol)
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Re-quote failed for position #{current.id} ({current.symbol}): {e}")
            return False

        signal = self.risk.exit_signal(current, spot_quote.last_price, deriv_quote.last_price, self.clock())
        spot_sale = await self.recorded_spot_sale(current, spot)
        if spot_sale is not None:
            # Held base is already gone; only the hedge buy-back is outstanding
            return await self.unwind(current, spot, deriv, spot_quote.last_price, deriv_quote.last_price,
                                     signal.reason if signal.triggered else "resume", spot_sale)
        if not signal.triggered:
            self.logger.info(
                f"Waiting for convergence on {current.symbol} bought at {current.buy_price}, "
                f"spot {signal.spot_price}, derivatives {signal.derivatives_price}"
            )
            return False

        return await self.unwind(current, spot, deriv, signal.spot_price, signal.derivatives_price, signal.reason)

    async def recorded_spot_sale(self, position: Position, spot) -> Optional[TradeRecord]:
        """Successful spot sell already recorded against this position, if any."""
        sales = await asyncio.to_thread(
            self.store.trades, success=True, venue=spot.name, position_id=position.id, side=TradeSide.SELL
        )
        return sales[-1] if sales else None

    async def unwind(self, position: Position, spot, deriv, spot_price: float,
                     deriv_price: float, reason: str, spot_sale: Optional[TradeRecord] = None) -> bool:
        """
        Closes both legs for exactly the position amount. Legs under a venue
        minimum are recorded as failed attempts and never sent.
        """
        if spot_sale is None:
            self.logger.warning(f"🔻 UNWIND ({reason}): position #{position.id} {position.symbol} {position.amount:.6f}")
            sell = await self._close_leg(position, spot, TradeSide.SELL, spot_price)
            if not sell.success:
                self.logger.error(f"Spot unwind failed for #{position.id} on {spot.name}: {sell.error}. Retrying next cycle.")
                return False
            exit_price = spot_price
        else:
            exit_price = spot_sale.price
            self.logger.warning(
                f"🔁 Resuming unwind of #{position.id}: spot already sold on {spot.name} @ {exit_price}, "
                f"retrying hedge buy-back on {deriv.name}"
            )

        cover = await self._close_leg(position, deriv, TradeSide.BUY, deriv_price)
        if not cover.success:
            self.logger.critical(f"💀 PARTIAL UNWIND: position #{position.id} spot sold on {spot.name} but hedge buy-back "
                                 f"on {deriv.name} failed: {cover.error}. Retrying hedge next cycle.")
            return False

        profit = self.risk.realized_profit(position.buy_price, exit_price, position.amount)
        if not await asyncio.to_thread(self.store.close_position, position.id, exit_price, profit):
            self.logger.warning(f"Position #{position.id} was already closed")
            return False
        position.closed, position.sell_price, position.profit = True, exit_price, profit
        self.logger.info(f"✅ Position #{position.id} closed ({reason}) @ {exit_price} | PnL: {profit:.4f}")
        return True

    async def _close_leg(self, position: Position, venue, side: TradeSide, price: float) -> TradeRecord:
        plan = plan_exact(venue.descriptor, side, position.amount, price)
        if plan is None:
            reason = (f"{position.amount:.8f} @ {price} is below {venue.name} minimum notional "
                      f"{venue.descriptor.min_notional}")
            self.logger.error(f"Position #{position.id}: {side.value} {position.symbol} not sent, {reason}")
            return await self.desk.reject(venue, side, position.symbol, position.amount, price, reason, position.id)
        return await self.desk.place(venue, side, position.symbol, plan, price, position.id)
