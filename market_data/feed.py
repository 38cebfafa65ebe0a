"""
Market Data - Feed.

============================================================
PURPOSE
============================================================
Owns the exchange market data subscriptions and turns them into
an ordered stream of Ticks and StreamGap markers.

- One stream task per symbol group
- Disconnect: emit StreamGap, back off, resubscribe
- Duplicate / out-of-order ticks are dropped
- Tick order is preserved per symbol
- Staleness is tracked with the injected clock

============================================================
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Union

from core.clock import ClockProtocol, SystemClock
from execution_engine.adapters.base import ExchangeAdapter
from execution_engine.adapters.errors import NetworkError, StreamDisconnectedError

from .config import MarketDataConfig
from .types import StreamGap, Tick


logger = logging.getLogger(__name__)


MarketEvent = Union[Tick, StreamGap]
Consumer = Callable[[MarketEvent], Awaitable[None]]


class MarketDataFeed:
    """Reconnecting market data feed for a fixed symbol set."""
    
    def __init__(
        self,
        adapter: ExchangeAdapter,
        symbols: Sequence[str],
        clock: Optional[ClockProtocol] = None,
        config: Optional[MarketDataConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._adapter = adapter
        self._symbols = list(dict.fromkeys(symbols))
        self._clock = clock or SystemClock()
        self._config = config or MarketDataConfig()
        self._sleep = sleep
        
        self._consumers: List[Consumer] = []
        self._tasks: List[asyncio.Task] = []
        self._running = False
        
        self._last_tick: Dict[str, Tick] = {}
        self._last_received_at: Dict[str, datetime] = {}
        self._open_gaps: Set[str] = set()
        
        self._dropped_ticks = 0
        self._reconnects = 0
    
    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------
    
    @property
    def symbols(self) -> List[str]:
        return list(self._symbols)
    
    @property
    def groups(self) -> List[List[str]]:
        size = max(1, self._config.group_size)
        return [self._symbols[i:i + size] for i in range(0, len(self._symbols), size)]
    
    @property
    def tasks(self) -> List[asyncio.Task]:
        return list(self._tasks)
    
    @property
    def dropped_ticks(self) -> int:
        return self._dropped_ticks
    
    @property
    def reconnects(self) -> int:
        return self._reconnects
    
    def add_consumer(self, consumer: Consumer) -> None:
        """Register an async callback receiving Ticks and StreamGaps in order."""
        self._consumers.append(consumer)
    
    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------
    
    def start(self) -> List[asyncio.Task]:
        """Start one stream task per symbol group."""
        if self._running:
            return self.tasks
        
        self._running = True
        for index, group in enumerate(self.groups):
            task = asyncio.create_task(self._run_group(group), name=f"market-data-{index}")
            self._tasks.append(task)
        
        logger.info(f"Market data feed started: {len(self._tasks)} group(s), {len(self._symbols)} symbol(s)")
        return self.tasks
    
    async def stop(self) -> None:
        """Cancel stream tasks and close subscriptions."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Market data feed stopped")
    
    # --------------------------------------------------------
    # STREAM LOOP
    # --------------------------------------------------------
    
    def _reconnect_delay(self, attempt: int) -> float:
        cfg = self._config
        return min(
            cfg.reconnect_initial_delay_seconds * (cfg.reconnect_multiplier ** attempt),
            cfg.reconnect_max_delay_seconds,
        )
    
    async def _run_group(self, group: List[str]) -> None:
        attempt = 0
        
        while self._running:
            try:
                async for tick in self._adapter.stream_market_data(group):
                    attempt = 0
                    await self.handle_tick(tick)
                reason = "stream ended"
            except (StreamDisconnectedError, NetworkError) as e:
                reason = e.info.message
            
            if not self._running:
                break
            
            await self._emit_gap(group, reason)
            
            delay = self._reconnect_delay(attempt)
            attempt += 1
            self._reconnects += 1
            logger.warning(
                f"Market data for {','.join(group)} interrupted ({reason}); "
                f"resubscribing in {delay:.1f}s"
            )
            await self._sleep(delay)
    
    async def _emit_gap(self, group: List[str], reason: str) -> None:
        self._open_gaps.update(group)
        gap = StreamGap(symbols=tuple(group), started_at=self._clock.now(), reason=reason)
        await self._dispatch(gap)
    
    async def handle_tick(self, tick: Tick) -> bool:
        """
        Accept a tick if it is newer than the last one for its symbol.
        
        Returns:
            True if the tick was accepted and dispatched
        """
        last = self._last_tick.get(tick.symbol)
        if last is not None and tick.timestamp <= last.timestamp:
            self._dropped_ticks += 1
            logger.debug(
                f"Dropped stale tick {tick.symbol} @ {tick.timestamp.isoformat()} "
                f"(last {last.timestamp.isoformat()})"
            )
            return False
        
        self._last_tick[tick.symbol] = tick
        self._last_received_at[tick.symbol] = self._clock.now()
        if tick.symbol in self._open_gaps:
            self._open_gaps.discard(tick.symbol)
            logger.info(f"Market data for {tick.symbol} resumed")
        
        await self._dispatch(tick)
        return True
    
    async def _dispatch(self, event: MarketEvent) -> None:
        for consumer in self._consumers:
            await consumer(event)
    
    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------
    
    def last_tick(self, symbol: str) -> Optional[Tick]:
        return self._last_tick.get(symbol)
    
    def has_gap(self, symbol: str) -> bool:
        return symbol in self._open_gaps
    
    def is_stale(self, symbol: str) -> bool:
        """True if no data, an open gap, or the last tick is too old."""
        received = self._last_received_at.get(symbol)
        if received is None or symbol in self._open_gaps:
            return True
        age = self._clock.seconds_since(received)
        return age > self._config.staleness_threshold_seconds
