"""
Orchestrator Package - Bot Coordination Layer.

============================================================
PACKAGE OVERVIEW
============================================================
Wires the exchange adapter, market data feed, strategy engine,
risk manager, execution engine and position tracker into one
asyncio runtime.

============================================================
CORE PRINCIPLES
============================================================
1. The coordinator has NO trading logic
2. Every intent passes the Risk Manager
3. Ticks are processed in order, one worker per symbol
4. Startup reconciles before any order can be submitted
5. Default behavior on uncertainty is NO TRADE

============================================================
QUICK START
============================================================
Command line usage::
    
    python app.py --env-file .env --symbols BTC-USDT,ETH-USDT

Programmatic usage::
    
    config = BotConfig.from_env(".env")
    coordinator = Coordinator(config, adapter)
    await coordinator.run()

The CLI lives in ``orchestrator.cli``.

============================================================
"""

from .config import BotConfig, SymbolSettings, DEFAULT_SYMBOLS, parse_symbols
from .core import Coordinator


__all__ = [
    "BotConfig",
    "SymbolSettings",
    "DEFAULT_SYMBOLS",
    "parse_symbols",
    "Coordinator",
]
