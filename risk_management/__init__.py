"""
Risk Management Package.

Pure pre-trade risk gate and stop-loss / take-profit exits.
"""

from .config import RiskLimits
from .risk_manager import RejectReason, RiskDecision, RiskManager


__all__ = [
    "RiskLimits",
    "RejectReason",
    "RiskDecision",
    "RiskManager",
]
