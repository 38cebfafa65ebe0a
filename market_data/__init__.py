"""
Market Data Package.

Normalized ticks and the reconnecting market data feed.
"""

from .config import MarketDataConfig
from .types import DepthSnapshot, PriceLevel, StreamGap, Tick


__all__ = [
    "MarketDataConfig",
    "DepthSnapshot",
    "PriceLevel",
    "StreamGap",
    "Tick",
]
