"""
Position Tracker - Reconciliation.

============================================================
PURPOSE
============================================================
Aligns local order and position state with the exchange's
authoritative account state.

RESPONSIBILITIES:
- Import open exchange orders not tracked locally
- Resolve local active orders missing from the exchange's
  open order list
- Detect position divergence
- Re-baseline the tracker from a fresh snapshot

CRITICAL INVARIANT:
    "Exchange state is authoritative."

DIVERGENCE HANDLING:
- A divergent cycle triggers an immediate re-fetch
- Divergence on consecutive cycles blocks order submission
  and re-baselines positions to the exchange
- The next clean cycle lifts the block

============================================================
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Deque, List, Optional, Set

from core.clock import ClockProtocol, SystemClock
from execution_engine.adapters import (
    AuthenticationError,
    ExchangeAdapter,
    ExchangeException,
    QueryOrderRequest,
)
from execution_engine.config import ReconciliationConfig
from execution_engine.types import AccountSnapshot, OrderState

from .tracker import PositionTracker

if TYPE_CHECKING:
    from execution_engine.order_manager import OrderExecutionEngine


logger = logging.getLogger(__name__)


DIVERGENCE_BLOCK_REASON = "state divergence"


# ============================================================
# RECONCILIATION TYPES
# ============================================================

class MismatchType(Enum):
    """Types of reconciliation mismatches."""
    
    GHOST_ORDER = "GHOST_ORDER"
    """Open on the exchange but not tracked locally; imported."""
    
    MISSING_ORDER = "MISSING_ORDER"
    """Active locally but not in the exchange's open orders."""
    
    POSITION_MISMATCH = "POSITION_MISMATCH"
    """Local position differs from the exchange's."""


class MismatchSeverity(Enum):
    """Severity of mismatch."""
    
    INFO = "INFO"
    """Informational, auto-resolved."""
    
    WARNING = "WARNING"
    """Needs attention but not critical."""
    
    CRITICAL = "CRITICAL"
    """Blocks order submission while it persists."""


@dataclass
class ReconciliationMismatch:
    """A detected mismatch."""
    
    mismatch_type: MismatchType
    severity: MismatchSeverity
    
    symbol: Optional[str] = None
    order_id: Optional[str] = None
    
    expected_value: Optional[str] = None
    """Local value."""
    
    actual_value: Optional[str] = None
    """Exchange value."""
    
    message: str = ""
    
    auto_resolved: bool = False
    resolution: Optional[str] = None


@dataclass
class ReconciliationResult:
    """Result of a reconciliation run."""
    
    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    
    orders_imported: int = 0
    orders_synced: int = 0
    
    mismatches: List[ReconciliationMismatch] = field(default_factory=list)
    
    errors: List[str] = field(default_factory=list)
    """Errors during reconciliation (e.g. snapshot fetch failed)."""
    
    @property
    def success(self) -> bool:
        return len(self.errors) == 0
    
    @property
    def divergent(self) -> bool:
        return any(m.mismatch_type == MismatchType.POSITION_MISMATCH for m in self.mismatches)
    
    @property
    def clean(self) -> bool:
        return self.success and not self.divergent


# ============================================================
# RECONCILIATION ENGINE
# ============================================================

class ReconciliationEngine:
    """
    Reconciles the tracker and the execution engine with the exchange.
    
    Runs on startup, periodically and on demand.
    """
    
    def __init__(
        self,
        tracker: PositionTracker,
        adapter: ExchangeAdapter,
        execution: "OrderExecutionEngine",
        config: Optional[ReconciliationConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._tracker = tracker
        self._adapter = adapter
        self._execution = execution
        self._config = config or ReconciliationConfig()
        self._clock = clock or SystemClock()
        
        self._history: Deque[ReconciliationResult] = deque(maxlen=self._config.history_size)
        self._run_counter = 0
        self._divergent_cycles = 0
        
        self._requested = asyncio.Event()
    
    # --------------------------------------------------------
    # TRIGGERS
    # --------------------------------------------------------
    
    def request(self) -> None:
        """Ask the periodic loop to run a cycle as soon as possible."""
        self._requested.set()
    
    async def run_forever(self) -> None:
        """Reconcile every interval, or sooner when requested."""
        while True:
            try:
                await asyncio.wait_for(
                    self._requested.wait(),
                    timeout=self._config.interval_seconds,
                )
            except asyncio.TimeoutError:
                pass
            self._requested.clear()
            await self.reconcile()
    
    # --------------------------------------------------------
    # RECONCILIATION
    # --------------------------------------------------------
    
    async def reconcile(self) -> ReconciliationResult:
        """
        Run a reconciliation pass.
        
        A divergent pass is followed by one immediate re-fetch.
        
        Returns:
            ReconciliationResult of the last cycle run
        """
        result = await self._cycle()
        if result.divergent and self._divergent_cycles < self._config.block_after_divergent_cycles:
            logger.warning(f"Reconciliation {result.run_id} divergent; re-fetching")
            result = await self._cycle()
        return result
    
    async def _cycle(self) -> ReconciliationResult:
        async with self._tracker.lock:
            self._run_counter += 1
            result = ReconciliationResult(
                run_id=f"REC_{self._run_counter:06d}",
                started_at=self._clock.now(),
            )
            
            logger.debug(f"Starting reconciliation run {result.run_id}")
            
            try:
                snapshot = await self._adapter.fetch_account_snapshot()
            except AuthenticationError:
                raise
            except ExchangeException as e:
                result.errors.append(f"Snapshot fetch failed: {e}")
                self._tracker.mark_stale(f"snapshot fetch failed: {e.info.category.value}")
                logger.error(f"Reconciliation run {result.run_id} failed: {e}")
                return self._complete(result)
            
            await self._import_unknown_orders(snapshot, result)
            await self._resolve_missing_orders(snapshot, result)
            
            in_flight = self._execution.active_symbols()
            self._check_positions(snapshot, in_flight, result)
            
            if result.divergent:
                self._divergent_cycles += 1
            else:
                self._divergent_cycles = 0
            
            blocking = self._divergent_cycles >= self._config.block_after_divergent_cycles
            skip = set(in_flight)
            if result.divergent and not blocking:
                # Keep local numbers until the re-fetch confirms the divergence
                skip |= {m.symbol for m in result.mismatches if m.mismatch_type == MismatchType.POSITION_MISMATCH}
            
            self._tracker.record_snapshot(snapshot, skip_symbols=skip)
            
            if blocking:
                self._tracker.block(DIVERGENCE_BLOCK_REASON)
            elif not result.divergent and self._tracker.view().blocked_reason == DIVERGENCE_BLOCK_REASON:
                self._tracker.unblock()
            
            return self._complete(result)
    
    async def _import_unknown_orders(
        self,
        snapshot: AccountSnapshot,
        result: ReconciliationResult,
    ) -> None:
        """Adopt open exchange orders the engine does not know."""
        for remote in snapshot.open_orders:
            local = None
            if remote.exchange_order_id:
                local = self._execution.get_order_by_exchange_id(remote.exchange_order_id)
            if local is None and remote.client_order_id:
                local = self._execution.get_order(remote.client_order_id)
            
            if local is not None:
                await self._execution.sync_from_exchange(local, remote)
                result.orders_synced += 1
                continue
            
            order = await self._execution.import_order(remote)
            result.orders_imported += 1
            result.mismatches.append(ReconciliationMismatch(
                mismatch_type=MismatchType.GHOST_ORDER,
                severity=MismatchSeverity.WARNING,
                symbol=remote.symbol,
                order_id=order.client_order_id,
                actual_value=remote.status.value,
                message=f"Untracked order on exchange: {remote.exchange_order_id}",
                auto_resolved=True,
                resolution="Imported",
            ))
    
    async def _resolve_missing_orders(
        self,
        snapshot: AccountSnapshot,
        result: ReconciliationResult,
    ) -> None:
        """Query local active orders the exchange no longer lists as open."""
        open_ids: Set[str] = {o.exchange_order_id for o in snapshot.open_orders if o.exchange_order_id}
        open_clients: Set[str] = {o.client_order_id for o in snapshot.open_orders if o.client_order_id}
        
        for order in self._execution.active_orders():
            if order.exchange_order_id in open_ids or order.client_order_id in open_clients:
                continue
            if order.state == OrderState.PENDING and not order.needs_reconciliation:
                # Submission still in flight
                continue
            
            try:
                response = await self._adapter.query_order(QueryOrderRequest(
                    symbol=order.symbol,
                    exchange_order_id=order.exchange_order_id,
                    client_order_id=order.client_order_id,
                ))
            except AuthenticationError:
                raise
            except ExchangeException as e:
                result.errors.append(f"Query of {order.client_order_id} failed: {e}")
                logger.log(e.log_level, f"Reconciliation query failed for {order.client_order_id}: {e}")
                continue
            
            mismatch = ReconciliationMismatch(
                mismatch_type=MismatchType.MISSING_ORDER,
                severity=MismatchSeverity.INFO,
                symbol=order.symbol,
                order_id=order.client_order_id,
                expected_value=order.state.value,
                auto_resolved=True,
            )
            
            if response.found and response.order is not None:
                await self._execution.sync_from_exchange(order, response.order)
                mismatch.actual_value = response.order.status.value
                mismatch.resolution = f"Synced to {order.state.value}"
            else:
                await self._execution.handle_unknown_order(order)
                mismatch.actual_value = "NOT_FOUND"
                if order.is_terminal:
                    mismatch.resolution = f"Marked {order.state.value}"
                else:
                    mismatch.severity = MismatchSeverity.WARNING
                    mismatch.auto_resolved = False
                    mismatch.message = f"Order {order.client_order_id} not found on exchange"
            
            result.orders_synced += 1
            result.mismatches.append(mismatch)
    
    def _check_positions(
        self,
        snapshot: AccountSnapshot,
        in_flight: Set[str],
        result: ReconciliationResult,
    ) -> None:
        """Compare local positions with the exchange's for quiet symbols."""
        tolerance = self._config.quantity_tolerance
        local = self._tracker.view()
        symbols = set(local.positions) | set(snapshot.positions)
        
        for symbol in sorted(symbols - in_flight):
            local_qty = local.position_quantity(symbol)
            remote = snapshot.get_position(symbol)
            remote_qty = remote.quantity if remote else Decimal("0")
            
            if abs(local_qty - remote_qty) <= tolerance:
                continue
            
            severity = (
                MismatchSeverity.CRITICAL
                if self._divergent_cycles + 1 >= self._config.block_after_divergent_cycles
                else MismatchSeverity.WARNING
            )
            logger.warning(
                f"Position divergence in {symbol}: local={local_qty}, exchange={remote_qty}"
            )
            result.mismatches.append(ReconciliationMismatch(
                mismatch_type=MismatchType.POSITION_MISMATCH,
                severity=severity,
                symbol=symbol,
                expected_value=str(local_qty),
                actual_value=str(remote_qty),
                message=f"Position mismatch: deviation={abs(local_qty - remote_qty)}",
            ))
    
    def _complete(self, result: ReconciliationResult) -> ReconciliationResult:
        result.completed_at = self._clock.now()
        self._history.append(result)
        
        if result.divergent and self._tracker.view().is_blocked:
            logger.critical(f"Reconciliation {result.run_id}: divergence persists, submissions blocked")
        
        logger.info(
            f"Reconciliation {result.run_id} complete: "
            f"{result.orders_imported} imported, "
            f"{result.orders_synced} synced, "
            f"{len(result.mismatches)} mismatches, "
            f"{len(result.errors)} errors"
        )
        return result
    
    # --------------------------------------------------------
    # HISTORY
    # --------------------------------------------------------
    
    @property
    def divergent_cycles(self) -> int:
        return self._divergent_cycles
    
    def get_last_result(self) -> Optional[ReconciliationResult]:
        return self._history[-1] if self._history else None
    
    def get_history(self, limit: int = 10) -> List[ReconciliationResult]:
        return list(self._history)[-limit:]
