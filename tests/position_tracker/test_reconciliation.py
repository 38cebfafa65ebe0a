"""
Reconciliation Engine Tests.

Runs against MockExchangeAdapter; the exchange is authoritative.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.clock import MockClock
from execution_engine.adapters import (
    AuthenticationError,
    MockExchangeAdapter,
    map_bingx_error,
    to_exception,
)
from execution_engine.config import ExecutionEngineConfig, ReconciliationConfig
from execution_engine.order_manager import OrderExecutionEngine
from execution_engine.types import Fill, OrderSide, OrderState, OrderType
from position_tracker import (
    DIVERGENCE_BLOCK_REASON,
    MismatchSeverity,
    MismatchType,
    PositionTracker,
    ReconciliationEngine,
)
from strategy_engine.types import TradeIntent


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
SYMBOL = "BTC-USDT"


class Harness:
    """Tracker, execution engine and reconciler over one mock exchange."""
    
    def __init__(self):
        self.clock = MockClock(T0)
        self.adapter = MockExchangeAdapter(clock=self.clock)
        self.tracker = PositionTracker(clock=self.clock)
        self.engine = OrderExecutionEngine(
            self.adapter,
            self.tracker,
            config=ExecutionEngineConfig.for_testing(),
            clock=self.clock,
        )
        self.reconciler = ReconciliationEngine(
            self.tracker,
            self.adapter,
            self.engine,
            config=ReconciliationConfig(interval_seconds=3600),
            clock=self.clock,
        )
    
    async def place_limit(self, quantity: str = "0.01", price: str = "40000"):
        return await self.engine.submit(TradeIntent(
            symbol=SYMBOL,
            side=OrderSide.BUY,
            quantity=Decimal(quantity),
            rationale="test_limit",
            order_type=OrderType.LIMIT,
            limit_price=Decimal(price),
        ))


@pytest.fixture
def harness():
    return Harness()


class TestOrderReconciliation:
    """Tests for order import and resolution."""
    
    @pytest.mark.asyncio
    async def test_untracked_exchange_order_imported(self, harness):
        remote = harness.adapter.add_open_order(
            SYMBOL, OrderSide.SELL, Decimal("0.02"), Decimal("60000"), client_order_id="EXT_manual"
        )
        
        result = await harness.reconciler.reconcile()
        
        order = harness.engine.get_order("EXT_manual")
        assert result.orders_imported == 1
        assert order.imported
        assert order.state == OrderState.SUBMITTED
        assert harness.engine.get_order_by_exchange_id(remote.order_id) is order
        assert result.mismatches[0].mismatch_type == MismatchType.GHOST_ORDER
        assert result.mismatches[0].auto_resolved
    
    @pytest.mark.asyncio
    async def test_import_is_not_repeated(self, harness):
        harness.adapter.add_open_order(
            SYMBOL, OrderSide.SELL, Decimal("0.02"), Decimal("60000"), client_order_id="EXT_manual"
        )
        
        await harness.reconciler.reconcile()
        result = await harness.reconciler.reconcile()
        
        assert result.orders_imported == 0
        assert result.orders_synced == 1
    
    @pytest.mark.asyncio
    async def test_order_filled_while_unobserved_is_synced(self, harness):
        submitted = await harness.place_limit("0.01", "40000")
        harness.adapter.fill_order(submitted.client_order_id, Decimal("0.01"))
        
        result = await harness.reconciler.reconcile()
        
        order = harness.engine.get_order(submitted.client_order_id)
        assert order.state == OrderState.FILLED
        assert result.mismatches[0].mismatch_type == MismatchType.MISSING_ORDER
        assert result.clean
        assert harness.tracker.position_quantity(SYMBOL) == Decimal("0.01")
        assert harness.tracker.order_history[-1].client_order_id == submitted.client_order_id


class TestPositionReconciliation:
    """Tests for divergence handling."""
    
    @pytest.mark.asyncio
    async def test_clean_cycle_rebaselines(self, harness):
        harness.adapter.set_position(SYMBOL, Decimal("0.5"), Decimal("48000"))
        harness.tracker.apply_fill(Fill(
            client_order_id="BOT_x", symbol=SYMBOL, side=OrderSide.BUY,
            quantity=Decimal("0.5"), price=Decimal("47000"),
        ))
        
        result = await harness.reconciler.reconcile()
        
        assert result.clean
        assert harness.tracker.position(SYMBOL).average_entry_price == Decimal("48000")
        assert not harness.tracker.view().stale
    
    @pytest.mark.asyncio
    async def test_persistent_divergence_blocks_then_clears(self, harness):
        harness.tracker.apply_fill(Fill(
            client_order_id="BOT_x", symbol=SYMBOL, side=OrderSide.BUY,
            quantity=Decimal("1"), price=Decimal("50000"),
        ))
        
        result = await harness.reconciler.reconcile()
        
        assert result.divergent
        assert result.mismatches[0].severity == MismatchSeverity.CRITICAL
        assert harness.reconciler.divergent_cycles == 2
        assert harness.tracker.view().blocked_reason == DIVERGENCE_BLOCK_REASON
        assert harness.tracker.position_quantity(SYMBOL) == 0
        assert len(harness.reconciler.get_history()) == 2
        
        result = await harness.reconciler.reconcile()
        
        assert result.clean
        assert harness.reconciler.divergent_cycles == 0
        assert not harness.tracker.view().is_blocked
    
    @pytest.mark.asyncio
    async def test_symbols_with_active_orders_skipped(self, harness):
        await harness.place_limit()
        harness.tracker.apply_fill(Fill(
            client_order_id="BOT_x", symbol=SYMBOL, side=OrderSide.BUY,
            quantity=Decimal("1"), price=Decimal("50000"),
        ))
        
        result = await harness.reconciler.reconcile()
        
        assert not result.divergent
        assert harness.tracker.position_quantity(SYMBOL) == Decimal("1")


class TestReconciliationFailures:
    """Tests for snapshot failures."""
    
    @pytest.mark.asyncio
    async def test_snapshot_failure_marks_stale(self, harness):
        await harness.reconciler.reconcile()
        harness.adapter.fail_next("fetch_account_snapshot")
        
        result = await harness.reconciler.reconcile()
        
        view = harness.tracker.view()
        assert not result.success
        assert view.stale
        assert "snapshot fetch failed" in view.stale_reason
    
    @pytest.mark.asyncio
    async def test_authentication_failure_propagates(self, harness):
        harness.adapter.fail_next(
            "fetch_account_snapshot",
            error=to_exception(map_bingx_error(100413, "Incorrect apiKey")),
        )
        
        with pytest.raises(AuthenticationError):
            await harness.reconciler.reconcile()
    
    @pytest.mark.asyncio
    async def test_request_triggers_loop(self, harness):
        task = asyncio.create_task(harness.reconciler.run_forever())
        try:
            harness.reconciler.request()
            for _ in range(100):
                if harness.reconciler.get_last_result() is not None:
                    break
                await asyncio.sleep(0.001)
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        
        assert harness.reconciler.get_last_result().clean
