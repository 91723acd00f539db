# arbengine/config.py
import yaml
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from .models import VenueDescriptor, VenueKind, OrderSizing

DEFAULT_CONFIG_PATH = "config.yaml"

class ConfigurationError(Exception):
    """
    Raised when the engine cannot proceed at all (no venues, no symbols, bad values).
    Distinct from a cycle that simply has nothing to do.
    """

@dataclass(frozen=True)
class EngineSettings:
    """
    Flattened, validated view of config.yaml used by every engine component.
    """
    min_volume: float = 100.0
    min_profit: float = 1.0
    max_profit: float = 5.0
    trade_amount: float = 5.0
    fee_rate: float = 0.001
    sizing: str = "net"
    convergence_threshold: float = 10.0
    convergence_enabled: bool = True
    stop_loss_percent: float = 5.0
    stop_loss_timeout_ms: float = 3_600_000
    convergence_range: float = 5.0
    poll_interval_sec: float = 5.0
    supervisor_interval_sec: float = 60.0
    balance_interval_sec: float = 300.0
    network_timeout_ms: int = 10_000
    auto_execute: bool = False
    sandbox: bool = False
    all_symbols: bool = False
    symbol_limit: int = 1000

    @property
    def stop_loss_timeout_sec(self) -> float:
        return self.stop_loss_timeout_ms / 1000.0

    @property
    def net_sizing(self) -> bool:
        return self.sizing == "net"

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "EngineSettings":
        strategy = cfg.get('strategy') or {}
        risk = cfg.get('risk') or {}
        perf = cfg.get('performance') or {}
        system = cfg.get('system') or {}

        try:
            settings = cls(
                min_volume=float(strategy.get('min_volume', 100)),
                min_profit=float(strategy.get('min_profit', 1)),
                max_profit=float(strategy.get('max_profit', 5)),
                trade_amount=float(strategy.get('trade_amount', 5)),
                fee_rate=float(strategy.get('fee_rate', 0.001)),
                sizing=str(strategy.get('sizing', 'net')),
                convergence_threshold=float(strategy.get('convergence_threshold', 10)),
                convergence_enabled=bool(strategy.get('convergence_enabled', True)),
                stop_loss_percent=float(risk.get('stop_loss_percent', 5)),
                stop_loss_timeout_ms=float(risk.get('stop_loss_timeout_ms', 3_600_000)),
                convergence_range=float(risk.get('convergence_range', 5)),
                poll_interval_sec=float(perf.get('poll_interval_sec', 5)),
                supervisor_interval_sec=float(perf.get('supervisor_interval_sec', 60)),
                balance_interval_sec=float(perf.get('balance_interval_sec', 300)),
                network_timeout_ms=int(perf.get('network_timeout_ms', 10_000)),
                auto_execute=bool(system.get('auto_execute', False)),
                sandbox=system.get('environment', 'live') == 'testnet',
                all_symbols=bool(cfg.get('all_symbols', False)),
                symbol_limit=int(cfg.get('symbol_limit', 1000)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        settings.validate()
        return settings

    def validate(self):
        if self.sizing not in ("net", "gross"):
            raise ConfigurationError(f"Unknown sizing convention '{self.sizing}' (use 'net' or 'gross')")
        if self.trade_amount <= 0:
            raise ConfigurationError("trade_amount must be positive")
        if self.min_profit > self.max_profit:
            raise ConfigurationError(f"min_profit ({self.min_profit}) is above max_profit ({self.max_profit})")
        if not 0 <= self.fee_rate < 0.5:
            raise ConfigurationError(f"fee_rate {self.fee_rate} out of range")
        for name in ("poll_interval_sec", "supervisor_interval_sec", "balance_interval_sec"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.symbol_limit <= 0:
            raise ConfigurationError("symbol_limit must be positive")


def load_config(path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Config file {path} is not valid YAML: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return cfg


def apply_overrides(cfg: Dict[str, Any], venues: Optional[List[str]] = None,
                    symbols: Optional[List[str]] = None, auto: Optional[bool] = None,
                    test: Optional[bool] = None, all_symbols: Optional[bool] = None) -> Dict[str, Any]:
    """
    Returns a copy of cfg with command-line selections layered on top.
    """
    out = dict(cfg)
    out['system'] = dict(cfg.get('system') or {})
    if venues:
        out['venues'] = {k: v for k, v in (cfg.get('venues') or {}).items() if k in venues}
    if symbols:
        out['symbols'] = list(symbols)
    if auto is not None:
        out['system']['auto_execute'] = auto
    if test:
        out['system']['environment'] = 'testnet'
    if all_symbols is not None:
        out['all_symbols'] = all_symbols
    return out


def build_venues(cfg: Dict[str, Any]) -> List[VenueDescriptor]:
    """
    Turns the 'venues' section into descriptors, preserving config order
    (the supervisor hedges against the first derivatives venue listed).
    """
    venues = []
    for name, raw in (cfg.get('venues') or {}).items():
        raw = raw or {}
        if not raw.get('enabled', True):
            continue
        try:
            kind = VenueKind(raw.get('kind', 'spot'))
        except ValueError:
            raise ConfigurationError(f"Venue {name}: unknown kind '{raw.get('kind')}'")
        try:
            sizing = OrderSizing(raw.get('buy_sizing', 'quantity'))
        except ValueError:
            raise ConfigurationError(f"Venue {name}: unknown buy_sizing '{raw.get('buy_sizing')}'")
        min_notional = float(raw.get('min_notional', 0) or 0)
        if min_notional < 0:
            raise ConfigurationError(f"Venue {name}: min_notional cannot be negative")

        venues.append(VenueDescriptor(
            name=name,
            kind=kind,
            exchange_id=raw.get('exchange_id', name),
            api_key=raw.get('api_key', '') or '',
            secret=raw.get('secret', '') or '',
            password=raw.get('password', '') or '',
            buy_sizing=sizing,
            min_notional=min_notional,
        ))

    if not venues:
        raise ConfigurationError("No venue selected or configured")
    return venues


def resolve_symbols(cfg: Dict[str, Any], settings: EngineSettings, venues: List[VenueDescriptor],
                    compatible: Optional[Dict[str, List[str]]] = None) -> List[str]:
    """
    Symbol list for the monitor: explicit 'symbols', or in all-symbols mode the
    stored compatible symbols supported by every selected venue.
    """
    if settings.all_symbols:
        if not compatible:
            raise ConfigurationError("No compatible symbols stored. Run 'pair-symbols' first.")
        names = {v.name for v in venues}
        symbols = [s for s, listed in compatible.items() if names.issubset(listed)]
        symbols = symbols[:settings.symbol_limit]
        if not symbols:
            raise ConfigurationError("No compatible symbol is listed on every selected venue")
        return symbols

    symbols = list(cfg.get('symbols') or [])
    if not symbols:
        raise ConfigurationError("No symbols configured. Use 'symbols' or 'all_symbols'.")
    return symbols
