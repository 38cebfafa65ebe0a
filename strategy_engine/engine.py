"""
Strategy Engine - Signal Engine.

============================================================
PURPOSE
============================================================
Maintains per-symbol rolling windows of ticks and asks the
configured strategy for Trade Intents.

============================================================
DESIGN PRINCIPLES
============================================================
- Hypothesis generator, not decision maker
- Missing or stale data = no intents
- Strategies only ever see immutable MarketState snapshots

============================================================
NO INTENTS WHEN
============================================================
1. The engine is shutting down
2. The symbol is suspended
3. Market data is stale (gap open or last tick too old)
4. The window is empty

============================================================
USAGE
============================================================
    engine = SignalEngine(MACDMomentumStrategy(config), is_stale=feed.is_stale)
    
    engine.on_tick(tick)
    intents = engine.evaluate(tick.symbol, view.position(tick.symbol))

============================================================
"""

import logging
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Set

from core.clock import ClockProtocol, SystemClock
from execution_engine.types import OrderRecord
from market_data.types import StreamGap, Tick
from position_tracker.types import PositionView

from .config import SignalEngineConfig
from .strategies.base import Strategy
from .types import MarketState, OrderOutcome, TradeIntent


logger = logging.getLogger(__name__)


class SignalEngine:
    """
    Routes market data to a strategy.
    
    ============================================================
    WHAT IT DOES NOT DO
    ============================================================
    - Approve or size trades
    - Submit orders
    - Keep strategy state (strategies are pure)
    
    ============================================================
    """
    
    def __init__(
        self,
        strategy: Strategy,
        config: Optional[SignalEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        is_stale: Optional[Callable[[str], bool]] = None,
    ):
        """
        Initialize the Signal Engine.
        
        Args:
            strategy: Strategy to evaluate
            config: Engine configuration
            clock: Clock used for tick ages
            is_stale: External staleness check (normally the feed's);
                combined with the engine's own gap and age tracking
        """
        self._strategy = strategy
        self._config = config or SignalEngineConfig()
        self._clock = clock or SystemClock()
        self._external_stale = is_stale
        
        self._windows: Dict[str, Deque[Tick]] = {}
        self._received_at: Dict[str, datetime] = {}
        self._gaps: Set[str] = set()
        self._suspended: Set[str] = set()
        self._outcomes: Dict[str, OrderOutcome] = {}
        
        self._shutting_down = False
    
    @property
    def strategy(self) -> Strategy:
        return self._strategy
    
    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------
    
    def on_tick(self, tick: Tick) -> None:
        window = self._windows.get(tick.symbol)
        if window is None:
            window = deque(maxlen=self._config.window_size)
            self._windows[tick.symbol] = window
        window.append(tick)
        self._received_at[tick.symbol] = self._clock.now()
        self._gaps.discard(tick.symbol)
    
    def on_gap(self, gap: StreamGap) -> None:
        self._gaps.update(gap.symbols)
    
    def is_stale(self, symbol: str) -> bool:
        if self._external_stale is not None and self._external_stale(symbol):
            return True
        received = self._received_at.get(symbol)
        if received is None or symbol in self._gaps:
            return True
        return self._clock.seconds_since(received) > self._config.staleness_threshold_seconds
    
    def market_state(self, symbol: str) -> MarketState:
        return MarketState(
            symbol=symbol,
            ticks=tuple(self._windows.get(symbol, ())),
            last_outcome=self._outcomes.get(symbol),
        )
    
    # --------------------------------------------------------
    # EVALUATION
    # --------------------------------------------------------
    
    def evaluate(self, symbol: str, position: Optional[PositionView]) -> List[TradeIntent]:
        """
        Ask the strategy for intents on ``symbol``.
        
        Returns:
            Intents for ``symbol``; empty when blocked by shutdown,
            suspension or stale data
        """
        if self._shutting_down or symbol in self._suspended:
            return []
        
        if self.is_stale(symbol):
            logger.debug(f"No evaluation for {symbol}: market data stale")
            return []
        
        market = self.market_state(symbol)
        if not market.ticks:
            return []
        
        intents = []
        for intent in self._strategy.evaluate(market, position):
            if intent.symbol != symbol:
                logger.warning(
                    f"Strategy {self._strategy.name} emitted intent for {intent.symbol} "
                    f"while evaluating {symbol}; dropped"
                )
                continue
            intents.append(intent)
        
        for intent in intents:
            logger.info(
                f"Intent {intent.side.value} {intent.quantity} {symbol} "
                f"({intent.rationale}) @ ~{intent.reference_price}"
            )
        return intents
    
    def process(self, tick: Tick, position: Optional[PositionView]) -> List[TradeIntent]:
        """Record ``tick`` and evaluate its symbol."""
        self.on_tick(tick)
        return self.evaluate(tick.symbol, position)
    
    # --------------------------------------------------------
    # ORDER AWARENESS
    # --------------------------------------------------------
    
    async def on_order_terminal(self, order: OrderRecord) -> None:
        """Remember the last terminal order per symbol for strategies to read."""
        self._outcomes[order.symbol] = OrderOutcome(
            client_order_id=order.client_order_id,
            side=order.side,
            state=order.state,
            filled_quantity=order.filled_quantity,
            average_price=order.average_fill_price,
            rationale=order.rationale,
            completed_at=order.updated_at,
        )
    
    def last_outcome(self, symbol: str) -> Optional[OrderOutcome]:
        return self._outcomes.get(symbol)
    
    # --------------------------------------------------------
    # TRADING STATUS
    # --------------------------------------------------------
    
    def suspend(self, symbol: str) -> None:
        if symbol not in self._suspended:
            logger.info(f"Trading suspended for {symbol}")
        self._suspended.add(symbol)
    
    def resume(self, symbol: str) -> None:
        if symbol in self._suspended:
            logger.info(f"Trading resumed for {symbol}")
        self._suspended.discard(symbol)
    
    def is_suspended(self, symbol: str) -> bool:
        return symbol in self._suspended
    
    @property
    def suspended_symbols(self) -> Set[str]:
        return set(self._suspended)
    
    def shutdown(self) -> None:
        self._shutting_down = True
