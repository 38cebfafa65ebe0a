"""
Strategy Engine - Configuration.

============================================================
PURPOSE
============================================================
Thresholds for the MACD momentum strategy and the Signal
Engine.

All thresholds are:
- Deterministic (no probabilities)
- Documented with their unit

============================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional


# ============================================================
# MACD MOMENTUM CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class MACDConfig:
    """
    Configuration for the MACD momentum strategy.
    
    ============================================================
    THRESHOLDS
    ============================================================
    Momentum must accelerate over the last three histogram bars
    and the last bar must move by more than
    momentum_change_pct of the previous one.
    
    ============================================================
    """
    
    # EMA periods (ticks)
    fast_period: int = 12
    slow_period: int = 26
    signal_period: int = 9
    
    # Momentum
    momentum_change_pct: float = 3.0              # Histogram bar-to-bar change, %
    cross_tolerance: float = 0.001                # |macd - signal| / |signal| counts as a cross
    min_strength: float = 0.0001                  # Minimum |histogram change|, price units
    
    # Order book confirmation
    use_depth_confirmation: bool = True
    depth_band_pct: float = 1.0                   # Levels within 1% of price
    depth_pressure_ratio: float = 1.2             # Bid/ask volume ratio for "strong" side
    
    # Window confirmation (price change and range position over the window)
    use_window_confirmation: bool = True
    trend_change_pct: float = 0.2                 # Window change beyond +/-0.2% is a trend
    range_low_pct: float = 20.0                   # Below 20% of window range = near low
    range_high_pct: float = 80.0                  # Above 80% of window range = near high
    volatile_range_pct: float = 2.0               # Window range above 2% = volatile
    volatile_low_pct: float = 40.0                # Volatile: long only below 40%
    volatile_high_pct: float = 60.0               # Volatile: short only above 60%
    max_spread_pct: float = 0.1                   # Wider spread cancels any signal
    
    # Sizing (base units per symbol)
    order_quantities: Dict[str, Decimal] = field(default_factory=dict)
    default_quantity: Optional[Decimal] = None
    
    def quantity_for(self, symbol: str) -> Optional[Decimal]:
        return self.order_quantities.get(symbol, self.default_quantity)
    
    @property
    def min_ticks(self) -> int:
        """Window length needed for three histogram bars."""
        return self.slow_period + self.signal_period + 2


# ============================================================
# SIGNAL ENGINE CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class SignalEngineConfig:
    """Configuration for the Signal Engine."""
    
    window_size: int = 200
    """Ticks kept per symbol."""
    
    staleness_threshold_seconds: float = 30.0
    """Used when no feed staleness check is supplied."""
