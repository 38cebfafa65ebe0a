"""
Order Execution Engine Tests.

============================================================
TEST COVERAGE
============================================================
1. Submission and fills
2. Idempotency (duplicate keys, lost responses)
3. Rejections and validation
4. Cancellation
5. Order refresh and timeouts
6. Shutdown behavior
============================================================
"""

import asyncio
import dataclasses
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.clock import MockClock
from execution_engine.adapters import (
    AuthenticationError,
    MockConfig,
    MockExchangeAdapter,
    map_bingx_error,
    to_exception,
)
from execution_engine.config import ExecutionEngineConfig
from execution_engine.order_manager import OrderExecutionEngine
from execution_engine.types import (
    ExecutionResultCode,
    OrderSide,
    OrderState,
    OrderType,
    SymbolRules,
)
from position_tracker import PositionTracker
from strategy_engine.types import TradeIntent


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
SYMBOL = "BTC-USDT"


class Harness:
    """Engine wired to a mock exchange and a tracker."""
    
    def __init__(self, symbol_rules=None, config=None):
        self.clock = MockClock(T0)
        self.adapter = MockExchangeAdapter(MockConfig(default_price=Decimal("50000")), clock=self.clock)
        self.tracker = PositionTracker(clock=self.clock)
        self.config = config or ExecutionEngineConfig.for_testing()
        self.discrepancies = 0
        self.terminal = []
        self.engine = OrderExecutionEngine(
            self.adapter,
            self.tracker,
            config=self.config,
            clock=self.clock,
            symbol_rules=symbol_rules,
            on_discrepancy=self._on_discrepancy,
        )
        self.engine.add_terminal_listener(self._on_terminal)
    
    def _on_discrepancy(self) -> None:
        self.discrepancies += 1
    
    async def _on_terminal(self, order) -> None:
        self.terminal.append(order.client_order_id)


@pytest.fixture
def harness():
    return Harness()


def market_intent(quantity: str = "0.01", side: OrderSide = OrderSide.BUY) -> TradeIntent:
    return TradeIntent(
        symbol=SYMBOL,
        side=side,
        quantity=Decimal(quantity),
        rationale="test_entry",
        reference_price=Decimal("50000"),
    )


def limit_intent(quantity: str = "0.02", price: str = "40000") -> TradeIntent:
    return TradeIntent(
        symbol=SYMBOL,
        side=OrderSide.BUY,
        quantity=Decimal(quantity),
        rationale="test_limit",
        order_type=OrderType.LIMIT,
        limit_price=Decimal(price),
    )


# ============================================================
# SUBMISSION TESTS
# ============================================================

class TestSubmission:
    """Tests for order submission."""
    
    @pytest.mark.asyncio
    async def test_market_order_fills(self, harness):
        """A market order is accepted, filled and reported to the tracker."""
        result = await harness.engine.submit(market_intent("0.01"), reserve_amount=Decimal("500"))
        
        assert result.result_code == ExecutionResultCode.SUCCESS
        assert result.order_state == OrderState.FILLED
        assert result.filled_quantity == Decimal("0.01")
        assert result.average_fill_price == Decimal("50000")
        assert result.client_order_id.startswith("BOT_")
        
        assert harness.tracker.position_quantity(SYMBOL) == Decimal("0.01")
        assert harness.tracker.fills_applied == 1
        assert harness.terminal == [result.client_order_id]
        assert harness.engine.in_flight_count == 0
    
    @pytest.mark.asyncio
    async def test_fill_fee_recorded(self, harness):
        result = await harness.engine.submit(market_intent("0.01"))
        order = harness.engine.get_order(result.client_order_id)
        
        assert order.total_fee == Decimal("0.01") * Decimal("50000") * Decimal("0.0005")
    
    @pytest.mark.asyncio
    async def test_limit_order_stays_open(self, harness):
        result = await harness.engine.submit(limit_intent(), reserve_amount=Decimal("800"))
        
        assert result.result_code == ExecutionResultCode.SUCCESS
        assert result.order_state == OrderState.SUBMITTED
        assert harness.engine.active_symbols() == {SYMBOL}
        assert harness.tracker.reserved_total == Decimal("800")
    
    @pytest.mark.asyncio
    async def test_brackets_rounded_and_sent(self):
        harness = Harness(symbol_rules={
            SYMBOL: SymbolRules(symbol=SYMBOL, min_quantity=Decimal("0.001"), quantity_precision=3, price_precision=1),
        })
        intent = dataclasses.replace(
            market_intent(),
            take_profit_price=Decimal("55000.04"),
            stop_loss_price=Decimal("47500.06"),
        )
        
        result = await harness.engine.submit(intent)
        
        sent = harness.adapter.get_order(result.client_order_id)
        assert sent.take_profit_price == Decimal("55000.0")
        assert sent.stop_loss_price == Decimal("47500.1")
        assert harness.adapter.brackets[SYMBOL] == (Decimal("55000.0"), Decimal("47500.1"))
    
    @pytest.mark.asyncio
    async def test_notional_reserved_while_open(self, harness):
        result = await harness.engine.submit(
            limit_intent(), reserve_amount=Decimal("800.8"), reserve_notional=Decimal("800"),
        )
        
        assert harness.tracker.view().reserved_notional == Decimal("800")
        
        await harness.engine.cancel(result.client_order_id)
        assert harness.tracker.view().reserved_notional == 0


# ============================================================
# IDEMPOTENCY TESTS
# ============================================================

class TestIdempotency:
    """Tests for idempotent submission."""
    
    @pytest.mark.asyncio
    async def test_duplicate_key_returns_existing_outcome(self, harness):
        first = await harness.engine.submit(market_intent(), client_order_id="BOT_fixed")
        second = await harness.engine.submit(market_intent(), client_order_id="BOT_fixed")
        
        assert harness.adapter.submit_calls == 1
        assert second.client_order_id == first.client_order_id
        assert second.result_code == first.result_code
        assert harness.tracker.position_quantity(SYMBOL) == Decimal("0.01")
    
    @pytest.mark.asyncio
    async def test_concurrent_duplicates_submit_once(self, harness):
        results = await asyncio.gather(
            harness.engine.submit(market_intent(), client_order_id="BOT_race"),
            harness.engine.submit(market_intent(), client_order_id="BOT_race"),
        )
        
        assert harness.adapter.submit_calls == 1
        assert len(harness.adapter.orders) == 1
        assert all(r.order_state == OrderState.FILLED for r in results)
    
    @pytest.mark.asyncio
    async def test_lost_response_adopted_not_resubmitted(self, harness):
        """The exchange accepted the order but the response was lost."""
        harness.adapter.fail_next("submit_order", after_accept=True)
        
        result = await harness.engine.submit(market_intent())
        
        assert result.result_code == ExecutionResultCode.SUCCESS
        assert result.order_state == OrderState.FILLED
        assert harness.adapter.submit_calls == 1
        assert len(harness.adapter.orders) == 1
        assert harness.tracker.position_quantity(SYMBOL) == Decimal("0.01")
    
    @pytest.mark.asyncio
    async def test_unknown_to_exchange_resubmitted_with_same_key(self, harness):
        harness.adapter.fail_next("submit_order")
        
        result = await harness.engine.submit(market_intent(), client_order_id="BOT_retry")
        
        assert result.result_code == ExecutionResultCode.SUCCESS
        assert result.attempts == 2
        assert harness.adapter.submit_calls == 2
        assert [o.client_order_id for o in harness.adapter.orders] == ["BOT_retry"]
    
    @pytest.mark.asyncio
    async def test_resubmission_bounded(self, harness):
        harness.adapter.fail_next("submit_order", times=2)
        
        result = await harness.engine.submit(market_intent())
        
        assert result.result_code == ExecutionResultCode.FAILED_NETWORK
        assert result.order_state == OrderState.EXPIRED
        assert harness.adapter.submit_calls == 2
        assert harness.adapter.orders == []
        assert harness.tracker.reserved_total == 0
    
    @pytest.mark.asyncio
    async def test_unresolvable_outcome_left_for_reconciliation(self, harness):
        """Submit and query both fail: no resubmission, reconciliation requested."""
        harness.adapter.fail_next("submit_order")
        harness.adapter.fail_next("query_order")
        
        result = await harness.engine.submit(market_intent())
        
        assert result.result_code == ExecutionResultCode.FAILED_DISCREPANCY
        assert result.order_state == OrderState.PENDING
        order = harness.engine.get_order(result.client_order_id)
        assert order.needs_reconciliation
        assert harness.discrepancies == 1
        assert harness.adapter.submit_calls == 1
    
    @pytest.mark.asyncio
    async def test_terminal_history_bounded(self):
        """Old terminal orders are evicted but their keys are never reused."""
        config = ExecutionEngineConfig.for_testing()
        config.idempotency.terminal_history_size = 2
        harness = Harness(config=config)
        
        for key in ("BOT_a", "BOT_b", "BOT_c"):
            await harness.engine.submit(market_intent(), client_order_id=key)
        
        assert harness.engine.active_orders() == []
        assert harness.engine.get_order("BOT_a") is None
        assert harness.engine.get_order("BOT_c").state == OrderState.FILLED
        
        replay = await harness.engine.submit(market_intent(), client_order_id="BOT_b")
        evicted = await harness.engine.submit(market_intent(), client_order_id="BOT_a")
        
        assert replay.order_state == OrderState.FILLED
        assert evicted.result_code == ExecutionResultCode.FAILED_VALIDATION
        assert evicted.error_message == "Idempotency key already used"
        assert harness.adapter.submit_calls == 3
        assert harness.tracker.position_quantity(SYMBOL) == Decimal("0.03")


# ============================================================
# REJECTION TESTS
# ============================================================

class TestRejections:
    """Tests for rejected and invalid orders."""
    
    @pytest.mark.asyncio
    async def test_exchange_rejection_releases_reservation(self, harness):
        harness.adapter.fail_next(
            "submit_order",
            error=to_exception(map_bingx_error(101204, "Insufficient margin")),
        )
        
        result = await harness.engine.submit(market_intent(), reserve_amount=Decimal("500"))
        
        assert result.result_code == ExecutionResultCode.REJECTED_BY_EXCHANGE
        assert result.order_state == OrderState.REJECTED
        assert "INSUFFICIENT_MARGIN" in result.error_message
        assert harness.tracker.reserved_total == 0
        assert harness.terminal == [result.client_order_id]
    
    @pytest.mark.asyncio
    async def test_authentication_failure_raises(self, harness):
        harness.adapter.fail_next(
            "submit_order",
            error=to_exception(map_bingx_error(100413, "Incorrect apiKey")),
        )
        
        with pytest.raises(AuthenticationError):
            await harness.engine.submit(market_intent())
    
    @pytest.mark.asyncio
    async def test_quantity_rounded_to_step(self):
        harness = Harness(symbol_rules={
            SYMBOL: SymbolRules(symbol=SYMBOL, min_quantity=Decimal("0.001"), quantity_precision=3),
        })
        
        result = await harness.engine.submit(market_intent("0.0159"))
        
        assert result.requested_quantity == Decimal("0.015")
    
    @pytest.mark.asyncio
    async def test_below_minimum_fails_validation(self):
        harness = Harness(symbol_rules={
            SYMBOL: SymbolRules(
                symbol=SYMBOL,
                min_quantity=Decimal("0.001"),
                quantity_precision=3,
                min_notional=Decimal("5"),
            ),
        })
        
        result = await harness.engine.submit(market_intent("0.0004"))
        
        assert result.result_code == ExecutionResultCode.FAILED_VALIDATION
        assert result.order_state == OrderState.REJECTED
        assert harness.adapter.submit_calls == 0


# ============================================================
# CANCELLATION TESTS
# ============================================================

class TestCancellation:
    """Tests for order cancellation."""
    
    @pytest.mark.asyncio
    async def test_cancel_open_order(self, harness):
        submitted = await harness.engine.submit(limit_intent(), reserve_amount=Decimal("800"))
        
        result = await harness.engine.cancel(submitted.client_order_id)
        
        assert result.result_code == ExecutionResultCode.CANCELLED
        assert result.order_state == OrderState.CANCELLED
        assert harness.tracker.reserved_total == 0
        assert harness.engine.active_orders() == []
    
    @pytest.mark.asyncio
    async def test_cancel_terminal_is_noop(self, harness):
        submitted = await harness.engine.submit(limit_intent())
        await harness.engine.cancel(submitted.client_order_id)
        
        again = await harness.engine.cancel(submitted.client_order_id)
        
        assert again.result_code == ExecutionResultCode.CANCELLED
        assert harness.adapter.cancel_calls == 1
    
    @pytest.mark.asyncio
    async def test_cancel_after_exchange_fill(self, harness):
        """A fill racing the cancel wins; the order ends FILLED."""
        submitted = await harness.engine.submit(limit_intent("0.02"))
        harness.adapter.fill_order(submitted.client_order_id, Decimal("0.02"))
        
        result = await harness.engine.cancel(submitted.client_order_id)
        
        assert result.order_state == OrderState.FILLED
        assert result.result_code == ExecutionResultCode.SUCCESS
        assert harness.tracker.position_quantity(SYMBOL) == Decimal("0.02")
    
    @pytest.mark.asyncio
    async def test_cancel_unknown_order(self, harness):
        result = await harness.engine.cancel("BOT_nope")
        
        assert result.result_code == ExecutionResultCode.FAILED_VALIDATION


# ============================================================
# REFRESH TESTS
# ============================================================

class TestRefresh:
    """Tests for polling active orders."""
    
    @pytest.mark.asyncio
    async def test_partial_fill_applied_once(self, harness):
        submitted = await harness.engine.submit(limit_intent("0.02"))
        harness.adapter.fill_order(submitted.client_order_id, Decimal("0.005"))
        
        await harness.engine.refresh_active_orders()
        await harness.engine.refresh_active_orders()
        
        order = harness.engine.get_order(submitted.client_order_id)
        assert order.state == OrderState.PARTIALLY_FILLED
        assert order.filled_quantity == Decimal("0.005")
        assert harness.tracker.position_quantity(SYMBOL) == Decimal("0.005")
        assert harness.tracker.fills_applied == 1
    
    @pytest.mark.asyncio
    async def test_stale_limit_order_cancelled(self, harness):
        submitted = await harness.engine.submit(limit_intent())
        harness.clock.advance(harness.config.timeout.order_timeout_seconds + 1)
        
        await harness.engine.refresh_active_orders()
        
        assert harness.engine.get_order(submitted.client_order_id).state == OrderState.CANCELLED
    
    @pytest.mark.asyncio
    async def test_fills_reported_in_exchange_order(self, harness):
        submitted = await harness.engine.submit(limit_intent("0.03"))
        cid = submitted.client_order_id
        
        harness.adapter.fill_order(cid, Decimal("0.01"), price=Decimal("39990"))
        await harness.engine.refresh_active_orders()
        harness.adapter.fill_order(cid, Decimal("0.02"), price=Decimal("39980"))
        await harness.engine.refresh_active_orders()
        
        order = harness.engine.get_order(cid)
        assert [f.quantity for f in order.fills] == [Decimal("0.01"), Decimal("0.02")]
        assert abs(order.fills[1].price - Decimal("39980")) < Decimal("0.000001")
        assert order.state == OrderState.FILLED


# ============================================================
# SHUTDOWN TESTS
# ============================================================

class TestShutdown:
    """Tests for shutdown behavior."""
    
    @pytest.mark.asyncio
    async def test_no_submissions_after_stop(self, harness):
        harness.engine.stop_accepting()
        
        result = await harness.engine.submit(market_intent())
        
        assert result.result_code == ExecutionResultCode.BLOCKED_SHUTDOWN
        assert harness.adapter.submit_calls == 0
    
    @pytest.mark.asyncio
    async def test_drain_waits_for_in_flight(self, harness):
        task = asyncio.create_task(harness.engine.submit(market_intent()))
        await asyncio.sleep(0)
        assert harness.engine.in_flight_count == 1
        
        await harness.engine.drain()
        
        assert harness.engine.in_flight_count == 0
        assert (await task).order_state == OrderState.FILLED
