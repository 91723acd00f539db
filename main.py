# main.py
import argparse
import asyncio
import contextlib
import signal
import sys
import questionary
from rich.console import Console
from rich.live import Live

from arbengine.bot import ArbitrageBot
from arbengine.config import (ConfigurationError, DEFAULT_CONFIG_PATH, load_config,
                              apply_overrides, build_venues, EngineSettings)
from arbengine.execution import cancel_recorded_order
from arbengine.logger import setup_console_logger
from arbengine.market_engine import MarketEngine
from arbengine.reports import (portfolio, failed_orders_table, open_orders_table,
                               volume_stats_table, generate_dashboard)
from arbengine.store import Store, DEFAULT_DB_PATH

console = Console()

def _csv(value: str):
    return [v.strip() for v in value.split(',') if v.strip()]

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Spot / derivatives arbitrage and convergence engine")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH, help="Path to config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    mon = sub.add_parser("monitor", help="Monitor venues for arbitrage and convergence")
    mon.add_argument("-e", "--venues", type=_csv, help="Venues to monitor (e.g. bybit-spot,bybit-perp)")
    mon.add_argument("-s", "--symbols", type=_csv, help="Symbols to monitor (e.g. BTC/USDT,ETH/USDT)")
    mon.add_argument("--all-symbols", action="store_true", default=None, help="Monitor all stored compatible symbols")
    mon.add_argument("-a", "--auto", action="store_true", default=None, help="Execute opportunities automatically")
    mon.add_argument("--test", action="store_true", help="Use sandbox endpoints")
    mon.add_argument("--select", action="store_true", help="Pick venues and symbols interactively")
    mon.add_argument("--dashboard", action="store_true", help="Show the live dashboard")

    sub.add_parser("pair-symbols", help="Store symbols listed on at least two venues")

    port = sub.add_parser("portfolio", help="Open positions valued at current prices")
    port.add_argument("-e", "--venue", help="Only positions opened on this venue")

    orders = sub.add_parser("orders", help="Failed order attempts and open venue orders")
    orders.add_argument("-e", "--venue", help="Only this venue")

    cancel = sub.add_parser("cancel-order", help="Cancel the venue order behind a recorded trade")
    cancel.add_argument("-i", "--id", type=int, required=True, help="Trade ID")

    vol = sub.add_parser("volume-stats", help="Average/min/max volume per venue and symbol")
    vol.add_argument("-s", "--symbol", help="Only this symbol")
    return parser.parse_args(argv)

def startup_selection(cfg):
    """Interactive CLI to select venues and symbols."""
    print("\n🚀 SPOT / DERIVATIVES ARB MONITOR \n")
    venues = questionary.checkbox("Select Venues to Activate:", choices=list((cfg.get('venues') or {}).keys())).ask()
    if not venues or len(venues) < 2:
        raise ConfigurationError("Need at least one spot and one derivatives venue")
    symbols = questionary.checkbox("Select Symbols to Monitor:", choices=list(cfg.get('symbols') or [])).ask()
    if not symbols:
        raise ConfigurationError("No symbols selected")
    return venues, symbols

async def run_monitor(cfg, args, logger):
    bot = ArbitrageBot(cfg, logger)
    try:
        await bot.start()
        await _run_tasks(bot, args, logger)
    finally:
        await bot.shutdown()
        bot.store.close()

async def _run_tasks(bot, args, logger):
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    interrupts = 0

    def on_interrupt():
        nonlocal interrupts
        interrupts += 1
        if interrupts == 1:
            logger.warning("Stopping after the current cycle (Ctrl-C again to abort)")
            bot.stop()
        else:
            main_task.cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
        loop.add_signal_handler(signal.SIGTERM, on_interrupt)
    except NotImplementedError:
        pass  # Windows: Ctrl-C aborts immediately

    runners = [asyncio.create_task(t.run()) for t in bot.tasks]
    if args.dashboard:
        with Live(console=console, refresh_per_second=4) as live:
            while not all(r.done() for r in runners):
                live.update(generate_dashboard(bot))
                await asyncio.sleep(0.25)
    await asyncio.gather(*runners)

def _open_store(cfg) -> Store:
    return Store((cfg.get('system') or {}).get('database', DEFAULT_DB_PATH))

@contextlib.asynccontextmanager
async def connected(cfg, logger, check_auth: bool = True):
    """Connected venues plus the store, both released on exit."""
    settings = EngineSettings.from_config(cfg)
    market = MarketEngine(build_venues(cfg), logger, settings.network_timeout_ms, settings.sandbox)
    store = _open_store(cfg)
    try:
        venues = await market.initialize(check_auth=check_auth)
        yield market, venues, store
    finally:
        await market.shutdown()
        store.close()

async def run_pair_symbols(cfg, logger):
    async with connected(cfg, logger, check_auth=False) as (market, _, store):
        compatible = market.compatible_symbols()
        store.save_compatible_symbols(compatible)
        logger.info(f"Stored {len(compatible)} compatible symbols")

async def run_portfolio(cfg, args, logger):
    async with connected(cfg, logger, check_auth=False) as (_, venues, store):
        table, total = await portfolio(store, venues, args.venue)
        console.print(table)
        console.print(f"[bold gold1]Total portfolio value: ${total:,.2f}[/bold gold1]")

async def run_orders(cfg, args, logger):
    async with connected(cfg, logger) as (_, venues, store):
        console.print(failed_orders_table(store.trades(success=False, venue=args.venue)))
        open_orders = {}
        for name, venue in venues.items():
            if args.venue and name != args.venue:
                continue
            try:
                open_orders[name] = await venue.get_open_orders()
            except Exception as e:
                logger.error(f"Open orders unavailable on {name}: {e}")
        console.print(open_orders_table(open_orders))

async def run_cancel(cfg, args, logger) -> bool:
    async with connected(cfg, logger) as (_, venues, store):
        return await cancel_recorded_order(store, venues, args.id, logger)

def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)
        logger = setup_console_logger("ArbEngine", (cfg.get('system') or {}).get('log_level', 'INFO'))

        if args.command == "monitor":
            venues, symbols = args.venues, args.symbols
            if args.select:
                venues, symbols = startup_selection(cfg)
            cfg = apply_overrides(cfg, venues=venues, symbols=symbols, auto=args.auto,
                                  test=args.test, all_symbols=args.all_symbols)
            if cfg['system'].get('environment') != 'testnet':
                logger.warning("Running against LIVE endpoints. Make sure the API keys are the intended ones.")
            asyncio.run(run_monitor(cfg, args, logger))
        elif args.command == "pair-symbols":
            asyncio.run(run_pair_symbols(cfg, logger))
        elif args.command == "portfolio":
            asyncio.run(run_portfolio(cfg, args, logger))
        elif args.command == "orders":
            asyncio.run(run_orders(cfg, args, logger))
        elif args.command == "cancel-order":
            if not asyncio.run(run_cancel(cfg, args, logger)):
                return 1
        elif args.command == "volume-stats":
            store = _open_store(cfg)
            console.print(volume_stats_table(store.volume_stats(args.symbol)))
            store.close()
    except ConfigurationError as e:
        print(f"❌ Cannot start: {e}", file=sys.stderr)
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\n🛑 Stopped by user.")
    return 0

if __name__ == "__main__":
    sys.exit(main())
