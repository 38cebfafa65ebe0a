"""
Order State Machine Tests.
"""

from decimal import Decimal

import pytest

from core.exceptions import StateTransitionError
from execution_engine import (
    Fill,
    OrderRecord,
    OrderSide,
    OrderState,
    OrderStateMachine,
    TransitionGuard,
)


def _order(quantity: str = "1") -> OrderRecord:
    return OrderRecord(
        client_order_id="BOT_sm",
        symbol="BTC-USDT",
        side=OrderSide.BUY,
        quantity=Decimal(quantity),
    )


def _fill(order: OrderRecord, quantity: str) -> Fill:
    return Fill(
        client_order_id=order.client_order_id,
        symbol=order.symbol,
        side=order.side,
        quantity=Decimal(quantity),
        price=Decimal("100"),
    )


class TestTransitionGuard:
    """Tests for allowed transitions."""
    
    def test_terminal_states_are_final(self):
        for terminal in (OrderState.FILLED, OrderState.CANCELLED, OrderState.REJECTED, OrderState.EXPIRED):
            allowed, reason = TransitionGuard.can_transition(terminal, OrderState.SUBMITTED)
            
            assert not allowed
            assert "terminal" in reason
    
    def test_pending_cannot_fill_directly(self):
        allowed, _ = TransitionGuard.can_transition(OrderState.PENDING, OrderState.FILLED)
        
        assert not allowed
    
    def test_same_state_allowed(self):
        allowed, _ = TransitionGuard.can_transition(OrderState.SUBMITTED, OrderState.SUBMITTED)
        
        assert allowed


class TestOrderStateMachine:
    """Tests for OrderStateMachine."""
    
    def test_happy_path(self):
        order = _order("1")
        machine = OrderStateMachine(order)
        events = []
        machine.add_listener(events.append)
        
        machine.mark_submitted("123")
        order.fills.append(_fill(order, "0.4"))
        machine.apply_fill_state()
        order.fills.append(_fill(order, "0.6"))
        machine.apply_fill_state()
        
        assert order.state == OrderState.FILLED
        assert order.previous_state == OrderState.PARTIALLY_FILLED
        assert order.exchange_order_id == "123"
        assert order.submitted_at is not None
        assert [e.to_state for e in events] == [
            OrderState.SUBMITTED,
            OrderState.PARTIALLY_FILLED,
            OrderState.FILLED,
        ]
        assert machine.is_terminal()
    
    def test_submitted_requires_exchange_id(self):
        machine = OrderStateMachine(_order())
        
        with pytest.raises(StateTransitionError):
            machine.transition_to(OrderState.SUBMITTED)
    
    def test_filled_requires_full_quantity(self):
        order = _order("1")
        machine = OrderStateMachine(order)
        machine.mark_submitted("123")
        order.fills.append(_fill(order, "0.5"))
        
        allowed, reason = machine.can_transition_to(OrderState.FILLED)
        
        assert not allowed
        assert "filled_quantity" in reason
    
    def test_terminal_transition_raises(self):
        machine = OrderStateMachine(_order())
        machine.mark_rejected("bad symbol")
        
        with pytest.raises(StateTransitionError):
            machine.mark_cancelled()
        assert machine.order.last_error == "bad symbol"
    
    def test_same_state_is_noop(self):
        machine = OrderStateMachine(_order())
        machine.mark_submitted("123")
        
        assert machine.mark_submitted("123") is None
        assert len(machine.history) == 1
    
    def test_no_fills_no_transition(self):
        machine = OrderStateMachine(_order())
        machine.mark_submitted("123")
        
        assert machine.apply_fill_state() is None
        assert machine.current_state == OrderState.SUBMITTED
        assert machine.can_cancel()
