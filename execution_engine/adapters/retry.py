"""
Exchange Adapter - Retry Policy.

============================================================
PURPOSE
============================================================
Bounded retries for transient exchange failures.

- Exponential backoff capped at max_delay, plus jitter
- Jitter comes from a seedable random.Random
- Only retryable ExchangeExceptions are retried
- AuthenticationError and logical rejections propagate at once
- After the last attempt the final error propagates

============================================================
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from execution_engine.adapters.errors import (
    AuthenticationError,
    ExchangeException,
)
from execution_engine.config import RetryConfig


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Runs an async operation with exponential backoff."""
    
    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._config = config or RetryConfig()
        self._sleep = sleep
        self._random = random.Random(self._config.seed)
    
    @property
    def max_attempts(self) -> int:
        return max(1, self._config.max_attempts)
    
    def delay_for(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt`` (0-based).
        
        base = initial * multiplier ** attempt, capped at max_delay,
        plus up to jitter_ratio * base of random jitter.
        """
        cfg = self._config
        base = min(
            cfg.initial_delay_seconds * (cfg.backoff_multiplier ** attempt),
            cfg.max_delay_seconds,
        )
        return base + base * cfg.jitter_ratio * self._random.random()
    
    async def run(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute ``func`` with retries.
        
        Args:
            operation: Name used in log lines
            func: Zero-argument coroutine factory, called once per attempt
        
        Raises:
            The last ExchangeException once attempts are exhausted, or the
            first non-retryable one.
        """
        attempt = 0
        while True:
            try:
                return await func()
            except AuthenticationError:
                logger.critical(f"{operation}: authentication rejected, not retrying")
                raise
            except ExchangeException as e:
                if not e.is_retryable:
                    raise
                
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.error(
                        f"{operation}: giving up after {attempt} attempts: {e.info}"
                    )
                    raise
                
                delay = self.delay_for(attempt - 1)
                logger.warning(
                    f"{operation}: attempt {attempt}/{self.max_attempts} failed "
                    f"({e.info.category.value}), retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
