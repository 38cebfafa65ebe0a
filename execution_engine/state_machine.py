"""
Execution Engine - Order State Machine.

============================================================
PURPOSE
============================================================
Manages order lifecycle with strict state transitions.

STATE MACHINE:
    
    PENDING ──accepted──► SUBMITTED ──fill──► PARTIALLY_FILLED
       │                     │                    │
       ├──► REJECTED ◄───────┤                    │
       │                     ├──► FILLED ◄────────┤
       └──► EXPIRED ◄────────┤                    │
                             └──► CANCELLED ◄─────┘
    PARTIALLY_FILLED ──► EXPIRED (timeout + exchange confirms unknown)

INVARIANTS:
- Terminal states are final
- FILLED requires filled quantity == requested quantity
- PARTIALLY_FILLED requires 0 < filled quantity < requested quantity
- All transitions are logged and reported to listeners

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from core.exceptions import StateTransitionError

from .types import OrderRecord, OrderState, utcnow


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[OrderState, Set[OrderState]] = {
    OrderState.PENDING: {
        OrderState.SUBMITTED,
        OrderState.REJECTED,
        OrderState.EXPIRED,
    },
    OrderState.SUBMITTED: {
        OrderState.PARTIALLY_FILLED,
        OrderState.FILLED,
        OrderState.CANCELLED,
        OrderState.REJECTED,
        OrderState.EXPIRED,
    },
    OrderState.PARTIALLY_FILLED: {
        OrderState.FILLED,
        OrderState.CANCELLED,
        OrderState.EXPIRED,
    },
    # Terminal states
    OrderState.FILLED: set(),
    OrderState.CANCELLED: set(),
    OrderState.REJECTED: set(),
    OrderState.EXPIRED: set(),
}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """Event representing a state transition."""
    
    client_order_id: str
    from_state: OrderState
    to_state: OrderState
    timestamp: datetime = field(default_factory=utcnow)
    reason: str = ""
    
    exchange_update: bool = False
    """Whether this came from exchange data."""
    
    details: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for state transitions.
    
    Ensures transitions are valid and provides reason for denial.
    """
    
    @staticmethod
    def can_transition(
        from_state: OrderState,
        to_state: OrderState,
    ) -> tuple[bool, str]:
        """
        Check if transition is allowed.
        
        Returns:
            Tuple of (allowed, reason)
        """
        if from_state == to_state:
            return True, "Same state"
        
        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"
        
        if from_state.is_terminal():
            return False, f"Cannot transition from terminal state {from_state.value}"
        
        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"
    
    @staticmethod
    def validate_order_for_state(
        order: OrderRecord,
        target_state: OrderState,
    ) -> tuple[bool, str]:
        """
        Validate order data for target state.
        
        Returns:
            Tuple of (valid, reason)
        """
        filled = order.filled_quantity
        
        if filled > order.quantity:
            return False, "filled_quantity exceeds requested quantity"
        
        if target_state == OrderState.SUBMITTED and not order.exchange_order_id:
            return False, "Missing exchange_order_id for SUBMITTED state"
        
        if target_state == OrderState.FILLED and filled != order.quantity:
            return False, "filled_quantity must equal quantity for FILLED state"
        
        if target_state == OrderState.PARTIALLY_FILLED:
            if filled <= 0 or filled >= order.quantity:
                return False, "PARTIALLY_FILLED needs 0 < filled_quantity < quantity"
        
        return True, "Order valid for state"


# ============================================================
# ORDER STATE MACHINE
# ============================================================

class OrderStateMachine:
    """
    State machine for one order's lifecycle.
    
    Manages state transitions with:
    - Guard checks
    - Event emission
    - History tracking
    """
    
    def __init__(self, order: OrderRecord):
        self._order = order
        self._history: List[StateTransitionEvent] = []
        self._listeners: List[Callable[[StateTransitionEvent], None]] = []
    
    @property
    def current_state(self) -> OrderState:
        return self._order.state
    
    @property
    def order(self) -> OrderRecord:
        return self._order
    
    @property
    def history(self) -> List[StateTransitionEvent]:
        return list(self._history)
    
    def add_listener(self, listener: Callable[[StateTransitionEvent], None]) -> None:
        """Add a transition listener."""
        self._listeners.append(listener)
    
    def can_transition_to(self, target_state: OrderState) -> tuple[bool, str]:
        allowed, reason = TransitionGuard.can_transition(self.current_state, target_state)
        if not allowed:
            return False, reason
        return TransitionGuard.validate_order_for_state(self._order, target_state)
    
    def transition_to(
        self,
        target_state: OrderState,
        reason: str = "",
        exchange_update: bool = False,
        timestamp: Optional[datetime] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[StateTransitionEvent]:
        """
        Transition to a new state.
        
        Args:
            target_state: Target state
            reason: Reason for transition
            exchange_update: Whether from exchange data
            timestamp: Transition time (engine clock)
            details: Additional details
        
        Returns:
            StateTransitionEvent, or None when already in target_state
        
        Raises:
            StateTransitionError: If transition is not allowed
        """
        allowed, validation_reason = self.can_transition_to(target_state)
        
        if not allowed:
            raise StateTransitionError(
                f"Cannot transition {self._order.client_order_id} from "
                f"{self.current_state.value} to {target_state.value}: "
                f"{validation_reason}",
                from_state=self.current_state.value,
                to_state=target_state.value,
            )
        
        if self.current_state == target_state:
            return None
        
        event = StateTransitionEvent(
            client_order_id=self._order.client_order_id,
            from_state=self.current_state,
            to_state=target_state,
            timestamp=timestamp or utcnow(),
            reason=reason,
            exchange_update=exchange_update,
            details=details or {},
        )
        
        self._order.previous_state = self._order.state
        self._order.state = target_state
        self._order.updated_at = event.timestamp
        if target_state == OrderState.SUBMITTED and self._order.submitted_at is None:
            self._order.submitted_at = event.timestamp
        
        self._history.append(event)
        
        for listener in self._listeners:
            listener(event)
        
        logger.info(
            f"Order {self._order.client_order_id} ({self._order.symbol}): "
            f"{event.from_state.value} -> {event.to_state.value} ({reason})"
        )
        
        return event
    
    # --------------------------------------------------------
    # CONVENIENCE METHODS
    # --------------------------------------------------------
    
    def mark_submitted(
        self,
        exchange_order_id: str,
        reason: str = "Order accepted",
        timestamp: Optional[datetime] = None,
    ) -> Optional[StateTransitionEvent]:
        self._order.exchange_order_id = exchange_order_id
        return self.transition_to(
            OrderState.SUBMITTED, reason, exchange_update=True, timestamp=timestamp
        )
    
    def mark_rejected(
        self,
        reason: str = "Order rejected",
        timestamp: Optional[datetime] = None,
    ) -> Optional[StateTransitionEvent]:
        self._order.last_error = reason
        return self.transition_to(
            OrderState.REJECTED, reason, exchange_update=True, timestamp=timestamp
        )
    
    def mark_cancelled(
        self,
        reason: str = "Order cancelled",
        timestamp: Optional[datetime] = None,
    ) -> Optional[StateTransitionEvent]:
        return self.transition_to(
            OrderState.CANCELLED, reason, exchange_update=True, timestamp=timestamp
        )
    
    def mark_expired(
        self,
        reason: str = "Order expired",
        timestamp: Optional[datetime] = None,
    ) -> Optional[StateTransitionEvent]:
        return self.transition_to(OrderState.EXPIRED, reason, timestamp=timestamp)
    
    def apply_fill_state(
        self,
        reason: str = "Fill",
        timestamp: Optional[datetime] = None,
    ) -> Optional[StateTransitionEvent]:
        """Move to PARTIALLY_FILLED or FILLED according to the fills recorded."""
        if self._order.filled_quantity >= self._order.quantity:
            return self.transition_to(
                OrderState.FILLED, reason, exchange_update=True, timestamp=timestamp
            )
        if self._order.filled_quantity > 0:
            return self.transition_to(
                OrderState.PARTIALLY_FILLED, reason, exchange_update=True, timestamp=timestamp
            )
        return None
    
    # --------------------------------------------------------
    # STATE QUERIES
    # --------------------------------------------------------
    
    def is_terminal(self) -> bool:
        return self.current_state.is_terminal()
    
    def can_cancel(self) -> bool:
        return self.current_state.allows_cancel()
