"""
Market Data - Configuration.
"""

from dataclasses import dataclass


@dataclass
class MarketDataConfig:
    """Market data feed configuration."""
    
    group_size: int = 10
    """Symbols per stream subscription (one task per group)."""
    
    staleness_threshold_seconds: float = 30.0
    """Ticks older than this make a symbol stale."""
    
    reconnect_initial_delay_seconds: float = 1.0
    
    reconnect_max_delay_seconds: float = 60.0
    
    reconnect_multiplier: float = 2.0
    
    window_size: int = 200
    """Ticks kept per symbol for strategies."""
