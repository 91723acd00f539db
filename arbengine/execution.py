# arbengine/execution.py
import asyncio
import time
from typing import Dict, Optional
from .config import EngineSettings
from .models import (Opportunity, OrderPlan, OrderSizing, Position, TradeRecord,
                     TradeSide, VenueDescriptor)
from .risk_engine import RiskEngine

def plan_buy(descriptor: VenueDescriptor, quantity: float, price: float) -> OrderPlan:
    """
    Sizes a market buy for the venue's convention.
    Orders under the venue minimum are raised to it, never dropped.
    """
    notional = quantity * price
    clamped = False
    if notional < descriptor.min_notional:
        notional = descriptor.min_notional
        quantity = notional / price
        clamped = True
    if descriptor.buy_sizing is OrderSizing.NOTIONAL:
        return OrderPlan(quantity=quantity, order_amount=notional, sizing=OrderSizing.NOTIONAL, clamped=clamped)
    return OrderPlan(quantity=quantity, order_amount=quantity, sizing=OrderSizing.QUANTITY, clamped=clamped)

def plan_sell(descriptor: VenueDescriptor, quantity: float, price: float) -> OrderPlan:
    """Market sells are always sized in base units."""
    clamped = False
    if quantity * price < descriptor.min_notional:
        quantity = descriptor.min_notional / price
        clamped = True
    return OrderPlan(quantity=quantity, order_amount=quantity, sizing=OrderSizing.QUANTITY, clamped=clamped)

def plan_exact(descriptor: VenueDescriptor, side: TradeSide, quantity: float, price: float) -> Optional[OrderPlan]:
    """
    Sizes an order for exactly `quantity` base units, used to close held legs.
    Returns None when the order would fall under the venue minimum notional.
    """
    notional = quantity * price
    if notional < descriptor.min_notional:
        return None
    if side is TradeSide.BUY and descriptor.buy_sizing is OrderSizing.NOTIONAL:
        return OrderPlan(quantity=quantity, order_amount=notional, sizing=OrderSizing.NOTIONAL)
    return OrderPlan(quantity=quantity, order_amount=quantity, sizing=OrderSizing.QUANTITY)


class OrderDesk:
    """
    Places single market orders and records every attempt, filled or not,
    in the store and the CSV audit trail.
    """
    def __init__(self, store, logger, audit=None):
        self.store = store
        self.logger = logger
        self.audit = audit

    async def place(self, venue, side: TradeSide, symbol: str, plan: OrderPlan, price: float,
                    position_id: Optional[int] = None) -> TradeRecord:
        if plan.clamped:
            self.logger.warning(
                f"{venue.name}: {side.value} {symbol} raised to minimum notional {venue.descriptor.min_notional}"
            )
        trade = TradeRecord(symbol=symbol, venue=venue.name, side=side, amount=plan.quantity,
                            price=price, success=False, position_id=position_id)
        try:
            if side is TradeSide.BUY:
                result = await venue.place_market_buy(symbol, plan.order_amount)
            else:
                result = await venue.place_market_sell(symbol, plan.order_amount)
            trade.success = True
            if isinstance(result, dict) and result.get('id') is not None:
                trade.order_id = str(result['id'])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            trade.error = str(e) or e.__class__.__name__
        trade.timestamp = time.time()
        await self._record(trade)
        return trade

    async def reject(self, venue, side: TradeSide, symbol: str, quantity: float, price: float, reason: str,
                     position_id: Optional[int] = None) -> TradeRecord:
        """Records an attempt that was refused before reaching the venue."""
        trade = TradeRecord(symbol=symbol, venue=venue.name, side=side, amount=quantity, price=price,
                            success=False, error=reason, position_id=position_id)
        await self._record(trade)
        return trade

    async def _record(self, trade: TradeRecord):
        # The insert finishes in its worker thread even if this task is cancelled
        await asyncio.to_thread(self.store.insert_trade, trade)
        if self.audit is not None:
            await self.audit.log_trade(trade)


class ExecutionEngine:
    """
    Opens a position for one opportunity: position row first, then the spot
    buy, then the derivatives sell. Legs are not atomic; a failed leg stops the
    sequence and leaves the open position for the supervisor or an operator.
    """
    def __init__(self, venues: Dict[str, object], store, settings: EngineSettings, logger,
                 audit=None, risk: Optional[RiskEngine] = None):
        self.venues = venues
        self.store = store
        self.cfg = settings
        self.logger = logger
        self.risk = risk or RiskEngine(settings, logger)
        self.desk = OrderDesk(store, logger, audit)

    def is_executable(self, op: Opportunity) -> bool:
        buy, sell = self.venues.get(op.buy_venue), self.venues.get(op.sell_venue)
        return (buy is not None and sell is not None
                and buy.descriptor.is_spot and sell.descriptor.is_derivatives)

    async def execute(self, op: Opportunity) -> Position:
        if not self.is_executable(op):
            raise ValueError(
                f"Opportunity {op.buy_venue} -> {op.sell_venue} on {op.symbol} is not a spot buy / derivatives sell"
            )
        spot = self.venues[op.buy_venue]
        deriv = self.venues[op.sell_venue]

        buy_plan = plan_buy(spot.descriptor, op.amount, op.buy_price)
        position = Position(
            symbol=op.symbol,
            venue=spot.name,
            amount=buy_plan.quantity,
            buy_price=op.buy_price,
            stop_loss_price=self.risk.stop_loss_price(op.buy_price),
            timestamp=time.time(),
        )
        # Position row exists before any order is sent
        await asyncio.to_thread(self.store.create_position, position)

        self.logger.info(
            f"⚡ EXECUTION TRIGGERED: {op.type.value} {op.symbol} | Buy {spot.name} -> Sell {deriv.name} "
            f"| Amt: {buy_plan.quantity:.6f} | Position #{position.id}"
        )

        buy = await self.desk.place(spot, TradeSide.BUY, op.symbol, buy_plan, op.buy_price, position.id)
        if not buy.success:
            self.logger.error(f"Buy of {op.symbol} on {spot.name} failed: {buy.error}")
            return position
        self.logger.info(f"Buy filled: {op.symbol} on {spot.name} @ {op.buy_price}")

        sell_plan = plan_sell(deriv.descriptor, buy_plan.quantity, op.sell_price)
        sell = await self.desk.place(deriv, TradeSide.SELL, op.symbol, sell_plan, op.sell_price, position.id)
        if not sell.success:
            self.logger.error(f"Sell of {op.symbol} on {deriv.name} failed: {sell.error} (position #{position.id} stays open)")
            return position

        # The short leg is a second open leg; the supervisor decides when to close
        self.logger.info(f"✅ Both legs open: {op.symbol} | Est. profit {op.profit:.4f} | Position #{position.id}")
        return position


async def cancel_recorded_order(store, venues: Dict[str, object], trade_id: int, logger) -> bool:
    """
    Cancels the venue order behind a recorded trade attempt and notes it on the record.
    """
    trade = await asyncio.to_thread(store.get_trade, trade_id)
    if trade is None:
        logger.error(f"Trade {trade_id} not found")
        return False
    if not trade.order_id:
        logger.error(f"Trade {trade_id} never reached {trade.venue} (no venue order id): {trade.error}")
        return False
    venue = venues.get(trade.venue)
    if venue is None:
        logger.error(f"Venue {trade.venue} not connected")
        return False

    try:
        await venue.cancel_order(trade.order_id, trade.symbol)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Cancel of order {trade.order_id} on {trade.venue} failed: {e}")
        return False

    await asyncio.to_thread(store.mark_trade_cancelled, trade_id)
    logger.info(f"Order {trade.order_id} ({trade.side.value} {trade.symbol}) on {trade.venue} cancelled")
    return True
