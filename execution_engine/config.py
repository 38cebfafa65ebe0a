"""
Execution Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the Execution Engine and the exchange client.

CRITICAL CONSTRAINTS:
- No blind retries
- No infinite loops
- Deterministic behavior (seedable jitter)

============================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration for exchange calls.
    
    SAFETY: Limited retries with exponential backoff.
    Authentication and logical rejections are never retried.
    """
    
    max_attempts: int = 4
    """Total attempts including the first one."""
    
    initial_delay_seconds: float = 0.5
    """Delay before the first retry."""
    
    max_delay_seconds: float = 30.0
    """Maximum delay between retries."""
    
    backoff_multiplier: float = 2.0
    """Multiplier for exponential backoff."""
    
    jitter_ratio: float = 0.2
    """Random jitter added on top of each delay, as a fraction of it."""
    
    seed: Optional[int] = None
    """Seed for the jitter generator (tests)."""


# ============================================================
# RATE LIMIT CONFIGURATION
# ============================================================

@dataclass
class RateLimitConfig:
    """Token bucket settings for outbound REST calls."""
    
    capacity: float = 10.0
    """Burst size in tokens."""
    
    refill_per_second: float = 8.0
    """Tokens added per second."""
    
    order_weight: float = 1.0
    """Tokens consumed by submit/cancel."""
    
    query_weight: float = 1.0
    """Tokens consumed by queries and snapshots."""
    
    acquire_timeout_seconds: Optional[float] = 15.0
    """Longest a caller waits for capacity before RateLimitedError."""


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """Timeout configuration."""
    
    connection_timeout_seconds: float = 5.0
    """Timeout for establishing connection."""
    
    request_timeout_seconds: float = 10.0
    """Total timeout for a single REST request."""
    
    order_timeout_seconds: float = 300.0
    """Open orders older than this are cancelled (or expired if unknown)."""


# ============================================================
# RECONCILIATION CONFIGURATION
# ============================================================

@dataclass
class ReconciliationConfig:
    """Reconciliation with exchange state."""
    
    enabled: bool = True
    """Whether periodic reconciliation runs."""
    
    interval_seconds: float = 60.0
    """Interval between reconciliation runs."""
    
    quantity_tolerance: Decimal = Decimal("0.00000001")
    """Absolute position quantity difference treated as equal."""
    
    block_after_divergent_cycles: int = 2
    """Consecutive divergent cycles before submission is blocked."""
    
    history_size: int = 100
    """Reconciliation results kept in memory."""


# ============================================================
# IDEMPOTENCY CONFIGURATION
# ============================================================

@dataclass
class IdempotencyConfig:
    """Client order id generation and resubmission policy."""
    
    client_order_id_prefix: str = "BOT_"
    """Prefix for client order IDs."""
    
    max_submit_attempts: int = 2
    """Submissions of one idempotency key after the exchange confirmed it unknown."""
    
    terminal_history_size: int = 1000
    """Terminal orders and results kept for duplicate-submission replay."""


# ============================================================
# EXCHANGE CONFIGURATION
# ============================================================

@dataclass
class ExchangeConfig:
    """Exchange-specific configuration."""
    
    exchange_id: str = "bingx_swap"
    
    rest_url: str = "https://open-api.bingx.com"
    
    demo_rest_url: str = "https://open-api-vst.bingx.com"
    """Virtual (VST) trading environment."""
    
    ws_url: str = "wss://open-api-swap.bingx.com/swap-market"
    
    recv_window_ms: int = 5000
    
    stream_depth: bool = False
    """Subscribe to depth20 in addition to book ticker / last price."""
    
    history_size: int = 1000
    """Terminal orders kept in memory by the tracker."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class ExecutionEngineConfig:
    """Master configuration for Execution Engine."""
    
    retry: RetryConfig = field(default_factory=RetryConfig)
    
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    
    order_refresh_interval_seconds: float = 2.0
    """Polling interval for active order status."""
    
    @classmethod
    def for_testing(cls) -> "ExecutionEngineConfig":
        """Get configuration for testing: no real sleeps, fixed jitter."""
        return cls(
            retry=RetryConfig(
                max_attempts=3,
                initial_delay_seconds=0.0,
                max_delay_seconds=0.0,
                jitter_ratio=0.0,
                seed=7,
            ),
            rate_limit=RateLimitConfig(capacity=1000.0, refill_per_second=1000.0),
            order_refresh_interval_seconds=0.01,
        )
