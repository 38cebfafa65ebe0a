#!/usr/bin/env python3
"""
BingX Trading Bot - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
This is the ONE executable entry point for the bot.

- Runs in the foreground until SIGINT/SIGTERM
- Exit code 0 on clean shutdown, 1 on fatal authentication
  failure, 2 on configuration errors
- Compatible with process supervisors (PM2, systemd)

============================================================
USAGE
============================================================
Direct execution:
    python app.py --env-file .env --symbols BTC-USDT,ETH-USDT

With PM2:
    pm2 start app.py --interpreter python --name bingx-trader -- --env-file .env

============================================================
"""

import sys

from orchestrator.cli import main


if __name__ == "__main__":
    sys.exit(main())
