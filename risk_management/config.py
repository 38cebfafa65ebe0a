"""
Risk Management - Configuration.

============================================================
PURPOSE
============================================================
Limits enforced by the Risk Manager.

Notional limits are in quote currency (USDT). Percentages are
expressed in percent (5 means 5%).

============================================================
DEFAULT CONFIGURATION
============================================================
- Max position per symbol: 1000 USDT notional
- Aggregate exposure: 2x equity
- Fee buffer: 0.1% on top of the order notional
- Stop loss: -5% / take profit: +10% of entry notional
- Entries carry exchange-side stop loss / take profit brackets

============================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict


@dataclass
class RiskLimits:
    """
    Risk limits for trade evaluation.
    
    Forced exits ignore every limit here except the exit thresholds.
    """
    
    max_position_notional: Decimal = Decimal("1000")
    """Maximum absolute position value per symbol."""
    
    symbol_position_limits: Dict[str, Decimal] = field(default_factory=dict)
    """Per-symbol overrides of max_position_notional."""
    
    max_exposure_ratio: Decimal = Decimal("2")
    """Gross exposure plus reservations may not exceed this multiple of equity."""
    
    fee_buffer_rate: Decimal = Decimal("0.001")
    """Extra balance required on top of the order notional to cover fees."""
    
    stop_loss_pct: Decimal = Decimal("5")
    
    take_profit_pct: Decimal = Decimal("10")
    
    exchange_brackets: bool = True
    """Attach stop loss and take profit trigger orders to every entry."""
    
    max_snapshot_age_seconds: float = 180.0
    """Account snapshots older than this make every evaluation reject."""
    
    def position_limit(self, symbol: str) -> Decimal:
        return self.symbol_position_limits.get(symbol, self.max_position_notional)
    
    @classmethod
    def for_testing(cls) -> "RiskLimits":
        return cls(
            max_position_notional=Decimal("1000"),
            max_exposure_ratio=Decimal("2"),
            fee_buffer_rate=Decimal("0.001"),
            max_snapshot_age_seconds=60.0,
        )
