"""
Strategy implementations.
"""

from .base import Strategy
from .macd import MACDMomentumStrategy, MACDPoint, Momentum, compute_macd, ema_series


__all__ = [
    "Strategy",
    "MACDMomentumStrategy",
    "MACDPoint",
    "Momentum",
    "compute_macd",
    "ema_series",
]
