# arbengine/bot.py
import asyncio
from typing import Any, Dict, List, Optional
from .config import ConfigurationError, EngineSettings, build_venues, resolve_symbols
from .execution import ExecutionEngine
from .inventory import InventoryEngine
from .logger import AsyncAuditLogger
from .market_engine import MarketEngine
from .models import Opportunity
from .poller import Poller
from .price_cache import PriceCache
from .risk_engine import RiskEngine
from .scheduler import PeriodicTask
from .store import Store, PriceRecordWriter, DEFAULT_DB_PATH
from .strategy import OpportunityScorer
from .supervisor import PositionSupervisor

DEFAULT_TRADE_LOG = "logs/trades.csv"

class ArbitrageBot:
    """
    Wires the engines together and owns their lifetime.

    Two loops run side by side: the scan loop (poll -> score -> execute) on the
    fine cadence and the position supervisor on the coarse one. They share
    nothing but the store.
    """
    def __init__(self, cfg: Dict[str, Any], logger, store: Optional[Store] = None):
        self.cfg = cfg
        self.logger = logger
        self.settings = EngineSettings.from_config(cfg)
        self.descriptors = build_venues(cfg)
        system = cfg.get('system') or {}
        audit = cfg.get('audit') or {}
        self.store = store or Store(system.get('database', DEFAULT_DB_PATH))
        self.audit_log = AsyncAuditLogger(audit.get('trade_log', DEFAULT_TRADE_LOG), logger)
        self.price_writer = PriceRecordWriter(self.store, logger)
        self.market = MarketEngine(self.descriptors, logger, self.settings.network_timeout_ms, self.settings.sandbox)
        self.risk = RiskEngine(self.settings, logger)

        self.venues: Dict[str, Any] = {}
        self.symbols: List[str] = []
        self.last_cache = PriceCache()
        self.last_opportunities: List[Opportunity] = []
        self.tasks: List[PeriodicTask] = []
        self.poller = self.scorer = self.executor = self.supervisor = self.inventory = None

    async def connect(self):
        """Runs the venue diagnostic and resolves the symbol universe."""
        venues = await self.market.initialize()
        if not (any(v.descriptor.is_spot for v in venues.values())
                and any(v.descriptor.is_derivatives for v in venues.values())):
            raise ConfigurationError(
                f"Need at least one connected spot and one derivatives venue, got: {', '.join(venues) or 'none'}"
            )
        compatible = self.store.compatible_symbols() if self.settings.all_symbols else None
        symbols = resolve_symbols(self.cfg, self.settings, [v.descriptor for v in venues.values()], compatible)
        self.build(venues, symbols)
        self.poller.prune_unsupported()

    def build(self, venues: Dict[str, Any], symbols: List[str]):
        self.venues = venues
        self.symbols = symbols
        self.poller = Poller(venues, symbols, self.logger, self.price_writer, self.risk)
        self.scorer = OpportunityScorer(venues, self.settings, self.logger, self.risk, self.price_writer)
        self.executor = ExecutionEngine(venues, self.store, self.settings, self.logger, self.audit_log, self.risk)
        self.supervisor = PositionSupervisor(venues, self.store, self.settings, self.logger, self.audit_log, self.risk)
        self.inventory = InventoryEngine(venues, self.store, self.logger)

        self.tasks = [
            PeriodicTask("scanner", self.settings.poll_interval_sec, self.scan_cycle, self.logger),
            PeriodicTask("supervisor", self.settings.supervisor_interval_sec, self.supervisor.run_cycle, self.logger),
        ]
        if any(v.descriptor.api_key for v in venues.values()):
            self.tasks.append(
                PeriodicTask("inventory", self.settings.balance_interval_sec, self.inventory.update_balances, self.logger)
            )

    def describe(self):
        s = self.settings
        self.logger.info(f"Monitoring {len(self.venues)} venues, {len(self.symbols)} symbols: {', '.join(self.symbols)}")
        self.logger.info(f"  Min volume: {s.min_volume} | Profit bounds: [{s.min_profit}, {s.max_profit}]")
        sizing = "net-of-fees" if s.net_sizing else "gross"
        self.logger.info(f"  Trade amount: {s.trade_amount} | Fee rate: {s.fee_rate} | Sizing: {sizing}")
        self.logger.info(f"  Stop-loss: {s.stop_loss_percent}% / {s.stop_loss_timeout_sec:g}s | Convergence range: {s.convergence_range}")
        if s.auto_execute:
            self.logger.warning("  AUTO EXECUTION ENABLED: opportunities will be traded")
        else:
            self.logger.info("  Observe-only: opportunities are logged, not traded")
        if s.sandbox:
            self.logger.info("  Sandbox endpoints (testnet)")

    async def scan_cycle(self) -> List[Opportunity]:
        cache = await self.poller.poll_once()
        self.last_cache = cache
        opportunities = await self.scorer.evaluate(cache)
        self.last_opportunities = opportunities

        for op in opportunities:
            self.logger.info(
                f"✨ FOUND: {op.type.value} | {op.buy_venue} -> {op.sell_venue} | {op.symbol} "
                f"| {op.buy_price} -> {op.sell_price} | Est. Net: {op.profit:.4f}"
            )
            if not self.settings.auto_execute:
                continue
            if not self.executor.is_executable(op):
                self.logger.info(f"Observe-only: {op.buy_venue} is not a spot venue, not executing")
                continue
            try:
                await self.executor.execute(op)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception(f"Execution of {op.type.value} {op.symbol} ({op.buy_venue} -> {op.sell_venue}) failed")
        return opportunities

    async def start(self):
        await self.audit_log.start()
        await self.price_writer.start()
        if not self.venues:
            await self.connect()
        self.describe()

    def stop(self):
        """Graceful stop: cycles in progress finish, no new cycle starts."""
        for task in self.tasks:
            task.stop()

    async def shutdown(self):
        print("Shutting down resources...")
        await self.price_writer.stop()
        await self.audit_log.stop()
        await self.market.shutdown()
