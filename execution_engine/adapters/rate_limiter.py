"""
Exchange Adapter - Token Bucket Rate Limiter.

============================================================
PURPOSE
============================================================
Client-side throttling of outbound REST calls.

- Capacity and refill rate are configurable
- acquire() waits until enough tokens exist
- Waiters are served in FIFO order
- A caller deadline that cannot be met raises RateLimitedError
  immediately instead of sleeping past it

============================================================
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from execution_engine.adapters.errors import create_rate_limit_error
from execution_engine.config import RateLimitConfig


logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Async token bucket.
    
    ``monotonic`` and ``sleep`` are injectable so tests can drive time.
    """
    
    def __init__(
        self,
        capacity: float,
        refill_per_second: float,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity <= 0 or refill_per_second <= 0:
            raise ValueError("capacity and refill_per_second must be positive")
        
        self._capacity = float(capacity)
        self._rate = float(refill_per_second)
        self._monotonic = monotonic
        self._sleep = sleep
        
        self._tokens = float(capacity)
        self._updated_at = monotonic()
        
        # Held by the head waiter; asyncio.Lock wakes waiters FIFO.
        self._lock = asyncio.Lock()
    
    @classmethod
    def from_config(cls, config: RateLimitConfig) -> "TokenBucket":
        return cls(config.capacity, config.refill_per_second)
    
    @property
    def capacity(self) -> float:
        return self._capacity
    
    @property
    def available(self) -> float:
        """Tokens available right now."""
        self._refill()
        return self._tokens
    
    def _refill(self) -> None:
        now = self._monotonic()
        elapsed = now - self._updated_at
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
            self._updated_at = now
    
    async def acquire(self, tokens: float = 1.0, timeout: Optional[float] = None) -> None:
        """
        Take ``tokens`` from the bucket, waiting for refill if needed.
        
        Args:
            tokens: Tokens to consume (must not exceed capacity)
            timeout: Longest total wait in seconds; None waits forever
        
        Raises:
            RateLimitedError: If capacity cannot be obtained in time
        """
        if tokens > self._capacity:
            raise ValueError(f"Requested {tokens} tokens exceeds capacity {self._capacity}")
        
        deadline = None if timeout is None else self._monotonic() + timeout
        
        if deadline is None:
            await self._lock.acquire()
        else:
            try:
                await asyncio.wait_for(self._lock.acquire(), timeout=max(timeout, 0))
            except asyncio.TimeoutError:
                raise create_rate_limit_error(
                    f"Timed out after {timeout}s waiting in rate limiter queue"
                ) from None
        
        try:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return
                
                wait = (tokens - self._tokens) / self._rate
                if deadline is not None and self._monotonic() + wait > deadline:
                    raise create_rate_limit_error(
                        f"Rate limiter needs {wait:.3f}s, beyond caller timeout"
                    )
                
                logger.debug(f"Rate limiter waiting {wait:.3f}s for {tokens} tokens")
                await self._sleep(wait)
        finally:
            self._lock.release()
