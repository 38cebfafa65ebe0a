"""
Execution Engine Package.

============================================================
PURPOSE
============================================================
Handles all order execution for approved Trade Intents.

CRITICAL PRINCIPLE:
    "Execution Engine is REACTIVE, not decision-making."
    "It executes only what the Risk Manager approved."

AUTHORITY BOUNDARIES:
    CAN:
        - Submit orders to exchange
        - Cancel orders
        - Query order status
        - Retry on transient failures
    
    MUST NOT:
        - Resize trades
        - Generate trade ideas
        - Mutate positions other than by reporting fills

============================================================
MODULES
============================================================
- types: Order types, states, fills, results, account snapshots
- config: Execution configuration
- state_machine: Order lifecycle management
- adapters: Exchange adapters (BingX, Mock)
- order_manager: OrderExecutionEngine (import from the module)
- models: ORM models for persistence
- repository: Order history persistence (import from the module)

order_manager and repository depend on position_tracker and
SQLAlchemy, so they are not re-exported here.

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    OrderSide,
    OrderType,
    OrderState,
    ExecutionResultCode,
    # Dataclasses
    Fill,
    OrderRecord,
    ExchangeOrder,
    AccountBalance,
    ExchangePosition,
    AccountSnapshot,
    SymbolRules,
    ExecutionResult,
    utcnow,
)

# ============================================================
# CONFIG
# ============================================================
from .config import (
    RetryConfig,
    RateLimitConfig,
    TimeoutConfig,
    ReconciliationConfig,
    IdempotencyConfig,
    ExchangeConfig,
    ExecutionEngineConfig,
)

# ============================================================
# STATE MACHINE
# ============================================================
from .state_machine import (
    VALID_TRANSITIONS,
    StateTransitionEvent,
    TransitionGuard,
    OrderStateMachine,
)


__all__ = [
    # Types
    "OrderSide",
    "OrderType",
    "OrderState",
    "ExecutionResultCode",
    "Fill",
    "OrderRecord",
    "ExchangeOrder",
    "AccountBalance",
    "ExchangePosition",
    "AccountSnapshot",
    "SymbolRules",
    "ExecutionResult",
    "utcnow",
    # Config
    "RetryConfig",
    "RateLimitConfig",
    "TimeoutConfig",
    "ReconciliationConfig",
    "IdempotencyConfig",
    "ExchangeConfig",
    "ExecutionEngineConfig",
    # State Machine
    "VALID_TRANSITIONS",
    "StateTransitionEvent",
    "TransitionGuard",
    "OrderStateMachine",
]
