"""
Orchestrator - Configuration.

============================================================
RESPONSIBILITY
============================================================
Bot-level configuration composed of every component config.

- Runtime values come from TRADER_* environment variables
  (loaded with python-dotenv), overridable by CLI flags
- The default symbol table carries per-currency order
  quantities and precision
- Invalid values raise InvalidConfigError before startup

============================================================
ENVIRONMENT
============================================================
TRADER_SYMBOLS                 Comma separated, e.g. BTC-USDT,ETH-USDT
TRADER_DEMO                    true/false, use the VST environment
TRADER_LOG_LEVEL               DEBUG/INFO/WARNING/ERROR/CRITICAL
TRADER_DATABASE_URL            Order history database (optional)
TRADER_MAX_POSITION_NOTIONAL   Per-symbol limit in quote currency
TRADER_MAX_EXPOSURE_RATIO      Gross exposure / equity
TRADER_LEVERAGE                Leverage used for margin sizing
TRADER_STOP_LOSS_PCT           Unrealized loss that forces an exit
TRADER_TAKE_PROFIT_PCT         Unrealized gain that forces an exit
TRADER_RECONCILE_INTERVAL      Seconds between reconciliations

============================================================
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar, Union

from dotenv import load_dotenv

from core.exceptions import InvalidConfigError
from execution_engine.config import ExecutionEngineConfig
from execution_engine.types import SymbolRules
from market_data.config import MarketDataConfig
from risk_management.config import RiskLimits
from strategy_engine.config import MACDConfig, SignalEngineConfig


T = TypeVar("T")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# ============================================================
# SYMBOL TABLE
# ============================================================

@dataclass(frozen=True)
class SymbolSettings:
    """Per-currency trading settings."""
    
    symbol: str
    base_asset: str
    order_quantity: Decimal
    """Quantity the strategy proposes per entry."""
    
    price_precision: int
    quantity_precision: int
    min_notional: Decimal = Decimal("5")
    leverage: int = 20
    """Exchange leverage applied to the symbol at startup."""
    
    def to_rules(self) -> SymbolRules:
        return SymbolRules(
            symbol=self.symbol,
            base_asset=self.base_asset,
            quote_asset="USDT",
            min_quantity=Decimal(1).scaleb(-self.quantity_precision),
            quantity_precision=self.quantity_precision,
            price_precision=self.price_precision,
            min_notional=self.min_notional,
        )


DEFAULT_SYMBOLS: Dict[str, SymbolSettings] = {
    s.symbol: s for s in (
        SymbolSettings("BTC-USDT", "BTC", Decimal("1.0"), 1, 3),
        SymbolSettings("ETH-USDT", "ETH", Decimal("30.0"), 2, 3),
        SymbolSettings("SOL-USDT", "SOL", Decimal("410.0"), 3, 1),
        SymbolSettings("XRP-USDT", "XRP", Decimal("10000.0"), 4, 1),
        SymbolSettings("BNB-USDT", "BNB", Decimal("16.0"), 4, 1),
        SymbolSettings("1000PEPE-USDT", "1000PEPE", Decimal("980000.0"), 4, 1),
        SymbolSettings("SUI-USDT", "SUI", Decimal("5800.0"), 4, 1),
        SymbolSettings("ARB-USDT", "ARB", Decimal("38000.0"), 4, 1),
    )
}


# ============================================================
# BOT CONFIGURATION
# ============================================================

@dataclass
class BotConfig:
    """Configuration for the trading bot."""
    
    symbols: List[str] = field(default_factory=lambda: ["BTC-USDT", "ETH-USDT"])
    """Symbols to trade."""
    
    symbol_settings: Dict[str, SymbolSettings] = field(default_factory=lambda: dict(DEFAULT_SYMBOLS))
    
    credentials_file: str = ".env"
    """Key-value file holding API_KEY and API_SECRET."""
    
    demo: bool = False
    """Trade on the exchange's demo environment."""
    
    log_level: str = "INFO"
    
    database_url: Optional[str] = None
    """Order history database; persistence is off when unset."""
    
    leverage: Optional[int] = None
    """Overrides the leverage of every symbol when set."""
    
    queue_size: int = 1000
    """Ticks buffered per symbol before the oldest is dropped."""
    
    shutdown_timeout_seconds: float = 30.0
    """Upper bound for draining in-flight submissions."""
    
    exit_retry_cooldown_seconds: float = 30.0
    """Pause before a failed stop loss / take profit exit is retried."""
    
    execution: ExecutionEngineConfig = field(default_factory=ExecutionEngineConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    risk: RiskLimits = field(default_factory=RiskLimits)
    strategy: MACDConfig = field(default_factory=MACDConfig)
    signal: SignalEngineConfig = field(default_factory=SignalEngineConfig)
    
    def __post_init__(self):
        if not self.strategy.order_quantities:
            quantities = {
                symbol: settings.order_quantity
                for symbol, settings in self.symbol_settings.items()
            }
            self.strategy = replace(self.strategy, order_quantities=quantities)
    
    def leverage_for(self, symbol: str) -> int:
        if self.leverage is not None:
            return self.leverage
        settings = self.symbol_settings.get(symbol)
        return settings.leverage if settings is not None else 1
    
    def symbol_rules(self) -> Dict[str, SymbolRules]:
        """Local rules for the configured symbols; exchange rules override them."""
        return {
            symbol: self.symbol_settings[symbol].to_rules()
            for symbol in self.symbols
            if symbol in self.symbol_settings
        }
    
    @classmethod
    def from_env(cls, env_file: Optional[Union[str, Path]] = None) -> "BotConfig":
        """
        Load configuration from environment variables.
        
        Args:
            env_file: Optional dotenv file loaded first (existing
                environment variables win)
        
        Raises:
            InvalidConfigError: If a variable cannot be parsed
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)
        
        config = cls()
        
        symbols = os.getenv("TRADER_SYMBOLS")
        if symbols:
            config.symbols = parse_symbols(symbols)
        
        config.demo = _env("TRADER_DEMO", _parse_bool, config.demo)
        config.log_level = _env("TRADER_LOG_LEVEL", str.upper, config.log_level)
        config.database_url = os.getenv("TRADER_DATABASE_URL") or None
        config.leverage = _env("TRADER_LEVERAGE", int, config.leverage)
        if env_file is not None:
            config.credentials_file = str(env_file)
        
        risk = config.risk
        config.risk = replace(
            risk,
            max_position_notional=_env("TRADER_MAX_POSITION_NOTIONAL", Decimal, risk.max_position_notional),
            max_exposure_ratio=_env("TRADER_MAX_EXPOSURE_RATIO", Decimal, risk.max_exposure_ratio),
            stop_loss_pct=_env("TRADER_STOP_LOSS_PCT", Decimal, risk.stop_loss_pct),
            take_profit_pct=_env("TRADER_TAKE_PROFIT_PCT", Decimal, risk.take_profit_pct),
            exchange_brackets=_env("TRADER_EXCHANGE_BRACKETS", _parse_bool, risk.exchange_brackets),
        )
        
        reconciliation = config.execution.reconciliation
        reconciliation.interval_seconds = _env(
            "TRADER_RECONCILE_INTERVAL", float, reconciliation.interval_seconds,
        )
        
        errors = config.validate()
        if errors:
            raise InvalidConfigError("environment", None, "; ".join(errors))
        return config
    
    @classmethod
    def for_testing(cls, symbols: Optional[List[str]] = None) -> "BotConfig":
        """Configuration for tests: no real sleeps, small windows."""
        symbols = symbols or ["BTC-USDT"]
        return cls(
            symbols=symbols,
            execution=ExecutionEngineConfig.for_testing(),
            market_data=MarketDataConfig(
                reconnect_initial_delay_seconds=0.0,
                reconnect_max_delay_seconds=0.0,
            ),
            risk=RiskLimits.for_testing(),
            strategy=MACDConfig(
                order_quantities={s: Decimal("0.01") for s in symbols},
            ),
            shutdown_timeout_seconds=5.0,
        )
    
    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []
        
        if not self.symbols:
            errors.append("at least one symbol is required")
        
        if self.log_level not in LOG_LEVELS:
            errors.append(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        
        if self.queue_size < 1:
            errors.append("queue_size must be at least 1")
        
        if any(self.leverage_for(symbol) < 1 for symbol in self.symbols):
            errors.append("leverage must be at least 1")
        
        if self.exit_retry_cooldown_seconds < 0:
            errors.append("exit_retry_cooldown_seconds must not be negative")
        
        if self.risk.max_position_notional <= 0:
            errors.append("max_position_notional must be positive")
        
        if self.execution.reconciliation.interval_seconds <= 0:
            errors.append("reconciliation interval must be positive")
        
        return errors


# ============================================================
# PARSING HELPERS
# ============================================================

def parse_symbols(value: str) -> List[str]:
    """Parse a comma separated symbol list, normalizing to upper case."""
    symbols = [s.strip().upper() for s in value.split(",") if s.strip()]
    return list(dict.fromkeys(symbols))


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value}")


def _env(name: str, parse: Callable[[str], T], default: T) -> T:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return parse(raw.strip())
    except (ValueError, InvalidOperation) as e:
        raise InvalidConfigError(name, raw, str(e)) from e
