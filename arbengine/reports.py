# arbengine/reports.py
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from rich.table import Table
from rich.layout import Layout
from rich.panel import Panel
from .models import Position, TradeRecord

def _ts(epoch: float) -> str:
    return datetime.fromtimestamp(epoch).strftime('%Y-%m-%d %H:%M:%S')

async def portfolio(store, venues: Dict[str, Any], venue: Optional[str] = None) -> Tuple[Table, float]:
    """
    Open positions valued at a fresh quote from their own venue.
    Positions whose venue is not connected, or whose quote fails, are listed without a value.
    """
    positions = await asyncio.to_thread(store.open_positions, venue)

    async def value(pos: Position) -> Optional[float]:
        v = venues.get(pos.venue)
        if v is None:
            return None
        try:
            quote = await v.get_quote(pos.symbol)
        except Exception:
            return None
        return quote.last_price

    prices = await asyncio.gather(*(value(p) for p in positions))

    table = Table(title="💰 Open Positions")
    table.add_column("#", justify="right")
    table.add_column("Symbol", style="cyan")
    table.add_column("Venue", style="magenta")
    table.add_column("Amount", justify="right")
    table.add_column("Buy", justify="right")
    table.add_column("Now", justify="right")
    table.add_column("Value (USD)", justify="right", style="green")
    table.add_column("Opened")

    total = 0.0
    for pos, price in zip(positions, prices):
        worth = pos.amount * price if price else None
        total += worth or 0.0
        table.add_row(
            str(pos.id), pos.symbol, pos.venue, f"{pos.amount:.6f}", f"{pos.buy_price:,.4f}",
            f"{price:,.4f}" if price else "-", f"${worth:,.2f}" if worth is not None else "-",
            _ts(pos.timestamp),
        )
    return table, total

def failed_orders_table(trades: List[TradeRecord]) -> Table:
    table = Table(title="⚠️ Failed / Cancelled Order Attempts")
    table.add_column("ID", justify="right")
    table.add_column("Side")
    table.add_column("Symbol", style="cyan")
    table.add_column("Venue", style="magenta")
    table.add_column("Amount", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("When")
    table.add_column("Status", style="red")
    for t in trades:
        table.add_row(
            str(t.id), t.side.value.upper(), t.symbol, t.venue, f"{t.amount:.6f}",
            f"{t.price:,.4f}", _ts(t.timestamp), t.error or "pending",
        )
    return table

def open_orders_table(orders: Dict[str, List[Dict[str, Any]]]) -> Table:
    table = Table(title="📖 Open Orders on Venues")
    table.add_column("Venue", style="magenta")
    table.add_column("Order ID")
    table.add_column("Symbol", style="cyan")
    table.add_column("Side")
    table.add_column("Amount", justify="right")
    table.add_column("Filled", justify="right")
    for venue, rows in orders.items():
        for o in rows:
            table.add_row(
                venue, str(o.get('id')), str(o.get('symbol')), str(o.get('side', '')).upper(),
                str(o.get('amount', '')), str(o.get('filled', '')),
            )
    return table

def volume_stats_table(rows: List[Dict[str, Any]]) -> Table:
    table = Table(title="📊 Volume Statistics")
    table.add_column("Venue", style="magenta")
    table.add_column("Symbol", style="cyan")
    table.add_column("Average", justify="right")
    table.add_column("Minimum", justify="right")
    table.add_column("Maximum", justify="right")
    table.add_column("Samples", justify="right")
    for r in rows:
        table.add_row(
            r['venue'], r['symbol'], f"{r['avg_volume'] or 0:,.2f}", f"{r['min_volume'] or 0:,.2f}",
            f"{r['max_volume'] or 0:,.2f}", str(r['samples']),
        )
    return table

def generate_dashboard(bot) -> Layout:
    """
    Live view: last cycle prices per venue, open positions, cycle counters.
    """
    price_table = Table(title=f"📡 Market Feed (cycle {bot.last_cache.cycle_id})")
    price_table.add_column("Symbol", style="cyan")
    venue_names = list(bot.venues.keys())
    for name in venue_names:
        price_table.add_column(name, justify="right", style="green")

    prices = bot.last_cache.prices()
    for symbol in bot.symbols:
        row = prices.get(symbol, {})
        price_table.add_row(symbol, *[f"{row[n]:,.4f}" if n in row else "-" for n in venue_names])

    pos_table = Table(title="💰 Open Positions")
    pos_table.add_column("#", justify="right")
    pos_table.add_column("Symbol", style="cyan")
    pos_table.add_column("Venue", style="magenta")
    pos_table.add_column("Amount", justify="right")
    pos_table.add_column("Buy", justify="right")
    pos_table.add_column("Stop", justify="right", style="red")
    open_positions = bot.store.open_positions()
    for pos in open_positions[:15]:
        pos_table.add_row(str(pos.id), pos.symbol, pos.venue, f"{pos.amount:.6f}",
                          f"{pos.buy_price:,.4f}", f"{pos.stop_loss_price:,.4f}")
    if len(open_positions) > 15:
        pos_table.add_row("", f"[dim]+{len(open_positions) - 15} more[/dim]", "", "", "", "")

    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )
    layout["top"].split_row(
        Layout(Panel(price_table)),
        Layout(Panel(pos_table))
    )

    mode = "AUTO" if bot.settings.auto_execute else "OBSERVE"
    footer = Panel(
        f"[bold gold1]{mode}[/bold gold1] | Opportunities last cycle: {len(bot.last_opportunities)} "
        f"| Open positions: {len(open_positions)}",
        style="white on blue",
    )
    layout["bottom"].update(footer)
    layout["bottom"].size = 3
    return layout
