"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the trading bot.

- Provides argparse-based CLI
- Loads configuration from environment and CLI flags
- Checks credentials before any network activity
- Entry point for the application

============================================================
EXIT CODES
============================================================
0  clean shutdown
1  fatal authentication failure
2  configuration error (including missing credentials)

============================================================
USAGE
============================================================
python app.py --env-file .env --symbols BTC-USDT,ETH-USDT
python -m orchestrator.cli --demo --log-level DEBUG

============================================================
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from core.clock import SystemClock
from core.credentials import TradingContext, load_credentials
from core.exceptions import ConfigurationError
from execution_engine.adapters import AuthenticationError
from execution_engine.adapters.bingx import BingXAdapter
from execution_engine.repository import OrderHistoryRepository

from .config import LOG_LEVELS, BotConfig, parse_symbols
from .core import Coordinator


logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_AUTH_FAILURE = 1
EXIT_CONFIG_ERROR = 2


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="bingx-trader",
        description="Automated BingX perpetual swap trading bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --env-file .env --symbols BTC-USDT,ETH-USDT
  %(prog)s --demo --log-level DEBUG        # Trade on the VST environment
        """
    )
    
    # --------------------------------------------------------
    # Configuration
    # --------------------------------------------------------
    parser.add_argument(
        "--env-file",
        type=str,
        default=".env",
        metavar="PATH",
        help="File with API_KEY, API_SECRET and TRADER_* settings (default: .env)",
    )
    
    parser.add_argument(
        "--symbols",
        type=str,
        metavar="LIST",
        help="Comma separated symbols, e.g. BTC-USDT,ETH-USDT (default: TRADER_SYMBOLS)",
    )
    
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Trade on the demo (VST) environment",
    )
    
    parser.add_argument(
        "--database-url",
        type=str,
        metavar="URL",
        help="Order history database, e.g. sqlite+aiosqlite:///orders.db",
    )
    
    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (default: TRADER_LOG_LEVEL or INFO)",
    )
    
    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )
    
    return parser


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> BotConfig:
    """
    Build bot configuration from the environment and CLI arguments.
    
    Raises:
        ConfigurationError: If the configuration is invalid
    """
    config = BotConfig.from_env(args.env_file)
    
    if args.symbols:
        config.symbols = parse_symbols(args.symbols)
    if args.demo:
        config.demo = True
    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = args.log_level
    
    errors = config.validate()
    if errors:
        raise ConfigurationError(f"Invalid configuration: {', '.join(errors)}")
    return config


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        stream=sys.stdout,
    )


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(config: BotConfig, context: TradingContext) -> int:
    """
    Run the bot until shutdown.
    
    Returns:
        Exit code
    """
    adapter = BingXAdapter(context, config.execution)
    
    repository = None
    if config.database_url:
        repository = OrderHistoryRepository.from_url(config.database_url)
    
    coordinator = Coordinator(
        config,
        adapter,
        clock=context.clock,
        repository=repository,
    )
    coordinator.install_signal_handlers()
    
    try:
        await coordinator.run()
        return EXIT_OK
    except AuthenticationError as e:
        logger.critical(f"Exchange rejected the credentials: {e}")
        return EXIT_AUTH_FAILURE
    finally:
        await coordinator.shutdown()
        coordinator.remove_signal_handlers()
        if repository is not None:
            await repository.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.
    
    Args:
        argv: Command line arguments (default: sys.argv[1:])
    
    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    
    try:
        config = build_config(args)
    except ConfigurationError as e:
        setup_logging()
        logger.error(str(e))
        return EXIT_CONFIG_ERROR
    
    setup_logging(config.log_level)
    
    try:
        credential = load_credentials(config.credentials_file)
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_CONFIG_ERROR
    
    context = TradingContext(credential=credential, clock=SystemClock(), demo=config.demo)
    
    logger.info(
        f"Starting bot | symbols={','.join(config.symbols)} | demo={config.demo} | "
        f"persistence={'on' if config.database_url else 'off'}"
    )
    return asyncio.run(async_main(config, context))


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
