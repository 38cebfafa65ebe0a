"""
Position Tracker Package.

Authoritative local account state: positions, balances,
reservations, and reconciliation against the exchange.
"""

from .types import AccountView, Position, PositionView
from .tracker import PositionTracker, Reservation
from .reconciliation import (
    DIVERGENCE_BLOCK_REASON,
    MismatchSeverity,
    MismatchType,
    ReconciliationEngine,
    ReconciliationMismatch,
    ReconciliationResult,
)


__all__ = [
    "AccountView",
    "Position",
    "PositionView",
    "PositionTracker",
    "Reservation",
    "DIVERGENCE_BLOCK_REASON",
    "MismatchSeverity",
    "MismatchType",
    "ReconciliationEngine",
    "ReconciliationMismatch",
    "ReconciliationResult",
]
