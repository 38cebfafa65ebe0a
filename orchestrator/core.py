"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
The Coordinator wires every trading component into one asyncio
runtime.

- Controls startup, shutdown, and the per-symbol pipeline
- Serializes Tick -> Strategy -> Risk -> Execution per symbol
- Runs the reconciliation and order refresh loops
- Handles signals (SIGINT, SIGTERM)

============================================================
ARCHITECTURAL POSITION
============================================================
- The Coordinator has NO trading logic
- It does NOT size or approve trades
- Every intent passes the Risk Manager
- It ONLY coordinates execution

============================================================
TASKS
============================================================
- market-data-N      one per symbol group (owned by the feed)
- pipeline-SYMBOL    one per symbol, consuming its tick queue
- reconciliation     periodic and on-demand reconciliation
- order-refresh      polls active orders

============================================================
"""

import asyncio
import logging
import signal
import sys
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from core.clock import ClockProtocol, SystemClock
from execution_engine.adapters import (
    AuthenticationError,
    ExchangeAdapter,
    ExchangeException,
)
from execution_engine.order_manager import OrderExecutionEngine
from execution_engine.repository import OrderHistoryRepository
from execution_engine.types import ExecutionResult, OrderRecord, OrderState, SymbolRules
from market_data.feed import MarketDataFeed, MarketEvent
from market_data.types import StreamGap, Tick
from position_tracker import PositionTracker, ReconciliationEngine
from risk_management import RiskManager
from strategy_engine import MACDMomentumStrategy, SignalEngine, Strategy, TradeIntent

from .config import BotConfig


logger = logging.getLogger(__name__)


# ============================================================
# COORDINATOR
# ============================================================

class Coordinator:
    """
    Trading bot coordinator.
    
    Owns the component graph and every background task. Only the
    Position Tracker mutates account state; everything else reads
    AccountView snapshots.
    """
    
    def __init__(
        self,
        config: BotConfig,
        adapter: ExchangeAdapter,
        clock: Optional[ClockProtocol] = None,
        strategy: Optional[Strategy] = None,
        repository: Optional[OrderHistoryRepository] = None,
    ):
        """
        Initialize the coordinator.
        
        Args:
            config: Bot configuration
            adapter: Connected-on-start exchange adapter
            clock: Clock shared by every component
            strategy: Strategy to run; MACD momentum by default
            repository: Order history persistence, if enabled
        """
        self._config = config
        self._adapter = adapter
        self._clock = clock or SystemClock()
        self._repository = repository
        self._symbols = list(dict.fromkeys(config.symbols))
        
        self._tracker = PositionTracker(
            clock=self._clock,
            history_size=config.execution.exchange.history_size,
        )
        self._execution = OrderExecutionEngine(
            adapter,
            self._tracker,
            config=config.execution,
            clock=self._clock,
            symbol_rules=config.symbol_rules(),
        )
        self._reconciliation = ReconciliationEngine(
            self._tracker,
            adapter,
            self._execution,
            config=config.execution.reconciliation,
            clock=self._clock,
        )
        self._execution.set_discrepancy_handler(self._reconciliation.request)
        
        self._feed = MarketDataFeed(
            adapter,
            self._symbols,
            clock=self._clock,
            config=config.market_data,
        )
        self._signals = SignalEngine(
            strategy or MACDMomentumStrategy(config.strategy),
            config=config.signal,
            clock=self._clock,
            is_stale=self._feed.is_stale,
        )
        self._risk = RiskManager(config.risk)
        
        self._execution.add_terminal_listener(self._signals.on_order_terminal)
        if repository is not None:
            self._execution.add_terminal_listener(repository.save_order)
        if config.risk.exchange_brackets:
            self._execution.add_terminal_listener(self._clear_brackets_when_flat)
        self._feed.add_consumer(self._on_market_event)
        
        self._queues: Dict[str, asyncio.Queue] = {}
        self._locks: Dict[str, asyncio.Lock] = {s: asyncio.Lock() for s in self._symbols}
        self._workers: List[asyncio.Task] = []
        self._loops: List[asyncio.Task] = []
        # Earliest retry of a failed forced exit, by symbol
        self._exit_retry_at: Dict[str, datetime] = {}
        
        self._started = False
        self._shutting_down = False
        self._stopped = asyncio.Event()
        self._shutdown_task: Optional[asyncio.Task] = None
        self._fatal: Optional[BaseException] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
    
    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------
    
    @property
    def config(self) -> BotConfig:
        return self._config
    
    @property
    def tracker(self) -> PositionTracker:
        return self._tracker
    
    @property
    def execution(self) -> OrderExecutionEngine:
        return self._execution
    
    @property
    def reconciliation(self) -> ReconciliationEngine:
        return self._reconciliation
    
    @property
    def feed(self) -> MarketDataFeed:
        return self._feed
    
    @property
    def signals(self) -> SignalEngine:
        return self._signals
    
    @property
    def risk(self) -> RiskManager:
        return self._risk
    
    @property
    def is_running(self) -> bool:
        return self._started and not self._stopped.is_set()
    
    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down
    
    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------
    
    async def start(self) -> None:
        """
        Start the coordinator.
        
        Connects, loads symbol rules and reconciles before any task
        that can submit orders is started.
        """
        if self._started:
            logger.warning("Coordinator already started")
            return
        self._started = True
        
        logger.info("=== COORDINATOR STARTUP SEQUENCE ===")
        
        try:
            await self._adapter.connect()
            await self._load_symbol_rules()
            await self._apply_leverage()
            
            if self._repository is not None:
                await self._repository.create_tables()
            
            result = await self._reconciliation.reconcile()
            if not result.success:
                logger.warning(
                    f"Startup reconciliation incomplete ({'; '.join(result.errors)}); "
                    f"trading stays blocked until a snapshot succeeds"
                )
        except AuthenticationError as e:
            logger.critical(f"Authentication failed during startup: {e}")
            self._fatal = e
            await self.shutdown()
            raise
        
        for symbol in self._symbols:
            self._queues[symbol] = asyncio.Queue(maxsize=self._config.queue_size)
            self._workers.append(self._spawn(self._symbol_worker(symbol), f"pipeline-{symbol}"))
        
        if self._config.execution.reconciliation.enabled:
            self._loops.append(self._spawn(self._reconciliation_loop(), "reconciliation"))
        self._loops.append(self._spawn(self._refresh_loop(), "order-refresh"))
        
        for task in self._feed.start():
            task.add_done_callback(self._on_task_done)
        
        logger.info(
            f"=== COORDINATOR STARTUP COMPLETE === symbols={','.join(self._symbols)} "
            f"strategy={self._signals.strategy.name}"
        )
    
    async def run(self) -> None:
        """
        Start and run until shutdown.
        
        Raises:
            AuthenticationError: If the exchange rejected the credentials
        """
        await self.start()
        await self._stopped.wait()
        if self._fatal is not None:
            raise self._fatal
    
    async def shutdown(self) -> None:
        """
        Stop the coordinator gracefully. Idempotent.
        
        Order: stop accepting intents, stop the feed, stop workers,
        drain in-flight submissions, stop loops, disconnect.
        """
        if self._shutting_down:
            await self._stopped.wait()
            return
        self._shutting_down = True
        
        logger.info("=== COORDINATOR SHUTDOWN SEQUENCE ===")
        
        self._signals.shutdown()
        self._execution.stop_accepting()
        
        await self._feed.stop()
        await self._cancel(self._workers)
        
        try:
            await asyncio.wait_for(
                self._execution.drain(),
                timeout=self._config.shutdown_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"{self._execution.in_flight_count} submission(s) still in flight after "
                f"{self._config.shutdown_timeout_seconds:.0f}s; reconcile on next start"
            )
        
        await self._cancel(self._loops)
        
        try:
            await self._adapter.disconnect()
        except ExchangeException as e:
            logger.warning(f"Disconnect failed: {e}")
        
        self._stopped.set()
        logger.info("=== COORDINATOR SHUTDOWN COMPLETE ===")
    
    def request_shutdown(self) -> None:
        """Schedule shutdown from a callback or signal handler."""
        if self._shutdown_task is None and not self._shutting_down:
            self._shutdown_task = asyncio.create_task(self.shutdown(), name="shutdown")
    
    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._on_task_done)
        return task
    
    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        
        if isinstance(error, AuthenticationError):
            logger.critical(f"Authentication failed in {task.get_name()}: {error}")
            self._fatal = error
        else:
            logger.error(f"Task {task.get_name()} crashed: {error!r}", exc_info=error)
        self.request_shutdown()
    
    @staticmethod
    async def _cancel(tasks: List[asyncio.Task]) -> None:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        tasks.clear()
    
    async def _load_symbol_rules(self) -> None:
        rules: Dict[str, SymbolRules] = self._config.symbol_rules()
        try:
            remote = await self._adapter.get_symbol_rules()
        except AuthenticationError:
            raise
        except ExchangeException as e:
            logger.warning(f"Symbol rules unavailable ({e}); using local settings")
            remote = {}
        
        for symbol in self._symbols:
            if symbol in remote:
                rules[symbol] = remote[symbol]
            elif symbol not in rules:
                logger.warning(f"No trading rules for {symbol}; orders are not pre-validated")
        
        self._execution.set_symbol_rules(rules)
        logger.info(f"Loaded trading rules for {len(rules)} symbol(s)")
    
    async def _apply_leverage(self) -> None:
        for symbol in self._symbols:
            leverage = self._config.leverage_for(symbol)
            try:
                await self._adapter.set_leverage(symbol, leverage)
            except AuthenticationError:
                raise
            except ExchangeException as e:
                logger.warning(f"Could not set {symbol} leverage to {leverage}x: {e}")
    
    # --------------------------------------------------------
    # Trading Status
    # --------------------------------------------------------
    
    def suspend_symbol(self, symbol: str) -> None:
        """Stop new strategy intents for ``symbol``; forced exits still run."""
        self._signals.suspend(symbol)
    
    def resume_symbol(self, symbol: str) -> None:
        self._signals.resume(symbol)
    
    def get_status(self) -> Dict[str, Any]:
        """Summary of positions, orders and trading status."""
        view = self._tracker.view()
        return {
            "running": self.is_running,
            "symbols": {
                symbol: {
                    "suspended": self._signals.is_suspended(symbol),
                    "stale": self._signals.is_stale(symbol),
                    "position": str(view.position_quantity(symbol)),
                    "active_orders": len(self._execution.active_orders(symbol)),
                }
                for symbol in self._symbols
            },
            "equity": str(view.equity),
            "available_balance": str(view.available_balance),
            "account_stale": view.stale,
            "blocked_reason": view.blocked_reason,
            "in_flight": self._execution.in_flight_count,
        }
    
    # --------------------------------------------------------
    # Pipeline
    # --------------------------------------------------------
    
    async def _on_market_event(self, event: MarketEvent) -> None:
        symbols: Sequence[str] = event.symbols if isinstance(event, StreamGap) else (event.symbol,)
        for symbol in symbols:
            queue = self._queues.get(symbol)
            if queue is None:
                continue
            if queue.full():
                dropped = queue.get_nowait()
                queue.task_done()
                logger.warning(f"Pipeline for {symbol} is behind; dropped {type(dropped).__name__}")
            queue.put_nowait(event)
    
    async def _symbol_worker(self, symbol: str) -> None:
        queue = self._queues[symbol]
        lock = self._locks[symbol]
        
        while True:
            event = await queue.get()
            try:
                async with lock:
                    if isinstance(event, StreamGap):
                        self._signals.on_gap(event)
                    else:
                        await self._on_tick(event)
            except AuthenticationError:
                raise
            except Exception as e:
                logger.error(f"Pipeline error for {symbol}: {e}", exc_info=True)
            finally:
                queue.task_done()
    
    async def _on_tick(self, tick: Tick) -> None:
        symbol = tick.symbol
        self._tracker.mark_to_market(tick)
        self._signals.on_tick(tick)
        
        if self._execution.active_orders(symbol):
            logger.debug(f"{symbol} has active orders; skipping evaluation")
            return
        
        position = self._tracker.view().position(symbol)
        
        if position is not None:
            exit_intent = self._risk.exit_for(position)
            if exit_intent is not None:
                await self._execute_exit(exit_intent)
                return
        
        for intent in self._signals.evaluate(symbol, position):
            await self.execute_intent(intent)
    
    async def _execute_exit(self, intent: TradeIntent) -> None:
        """Submit a forced exit, pausing retries of one that failed."""
        symbol = intent.symbol
        now = self._clock.now()
        retry_at = self._exit_retry_at.get(symbol)
        if retry_at is not None and now < retry_at:
            logger.debug(f"{symbol} {intent.rationale} exit waiting until {retry_at.isoformat()}")
            return
        
        result = await self.execute_intent(intent)
        if result is not None and result.is_success:
            self._exit_retry_at.pop(symbol, None)
            return
        
        cooldown = self._config.exit_retry_cooldown_seconds
        self._exit_retry_at[symbol] = now + timedelta(seconds=cooldown)
        logger.warning(f"{symbol} {intent.rationale} exit failed; next attempt in {cooldown:.0f}s")
    
    async def _clear_brackets_when_flat(self, order: OrderRecord) -> None:
        """Cancel leftover exchange brackets once a closing order flattens the position."""
        if not order.reduce_only or order.state != OrderState.FILLED:
            return
        if self._tracker.position_quantity(order.symbol) != 0:
            return
        try:
            await self._adapter.cancel_all_orders(order.symbol)
        except ExchangeException as e:
            logger.warning(f"Could not cancel {order.symbol} brackets: {e}")
    
    async def execute_intent(self, intent: TradeIntent) -> Optional[ExecutionResult]:
        """
        Gate an intent through the Risk Manager and submit it.
        
        Returns:
            ExecutionResult, or None if the Risk Manager rejected it
        """
        async with self._tracker.lock:
            decision = self._risk.evaluate(self._tracker.view(), intent)
        if not decision.approved:
            return None
        
        # No suspension point between the risk check and the reservation
        result = await self._execution.submit(
            decision.intent,
            reserve_amount=decision.required_balance,
            reserve_notional=decision.required_notional,
        )
        
        level = logging.INFO if result.is_success else logging.WARNING
        logger.log(
            level,
            f"{intent.rationale} {decision.intent.side.value} {decision.intent.quantity} "
            f"{intent.symbol}: {result.result_code.value} ({result.order_state.value})",
        )
        return result
    
    # --------------------------------------------------------
    # Background Loops
    # --------------------------------------------------------
    
    async def _reconciliation_loop(self) -> None:
        interval = self._config.execution.reconciliation.interval_seconds
        while True:
            try:
                await self._reconciliation.run_forever()
            except AuthenticationError:
                raise
            except Exception as e:
                logger.error(f"Reconciliation loop error: {e}", exc_info=True)
                await asyncio.sleep(interval)
    
    async def _refresh_loop(self) -> None:
        interval = self._config.execution.order_refresh_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                async with self._tracker.lock:
                    await self._execution.refresh_active_orders()
            except AuthenticationError:
                raise
            except Exception as e:
                logger.error(f"Order refresh error: {e}", exc_info=True)
    
    # --------------------------------------------------------
    # Signal Handlers
    # --------------------------------------------------------
    
    def install_signal_handlers(self) -> None:
        """Install SIGINT/SIGTERM handlers for graceful shutdown."""
        self._loop = asyncio.get_running_loop()
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, self._signal_handler)
            return
        
        loop = self._loop
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._async_signal_handler, sig)
    
    def remove_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
    
    def _signal_handler(self, signum: int, frame: Any) -> None:
        """Synchronous signal handler (Windows)."""
        logger.info(f"Received signal {signum}")
        self._loop.call_soon_threadsafe(self.request_shutdown)
    
    def _async_signal_handler(self, sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}")
        self.request_shutdown()
