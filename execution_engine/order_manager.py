"""
Execution Engine - Order Execution Engine.

============================================================
PURPOSE
============================================================
Turns approved Trade Intents into exchange orders and drives
each order through its lifecycle.

RESPONSIBILITIES:
- Idempotent submission (one client order id per order)
- Order tracking and state management
- Fill derivation from exchange status deltas
- Cancellation and timeout handling
- Reconciliation hooks (sync / import)

SAFETY CONSTRAINTS:
- A known client order id never produces a second submission
- A lost submit response is resolved by querying, never by
  blindly resubmitting
- Submissions in flight survive task cancellation and are
  awaited on shutdown

============================================================
ORDER LIFECYCLE
============================================================
PENDING -> SUBMITTED -> PARTIALLY_FILLED -> FILLED

Terminal: FILLED, CANCELLED, REJECTED, EXPIRED

============================================================
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Set

from core.clock import ClockProtocol, SystemClock
from position_tracker.tracker import PositionTracker
from strategy_engine.types import TradeIntent

from .adapters import (
    AuthenticationError,
    CancelOrderRequest,
    ExchangeAdapter,
    ExchangeException,
    NetworkError,
    OrderAlreadyTerminalError,
    OrderNotFoundError,
    OrderRejectedError,
    QueryOrderRequest,
    RateLimitedError,
    SubmitOrderRequest,
)
from .config import ExecutionEngineConfig
from .state_machine import OrderStateMachine
from .types import (
    ExchangeOrder,
    ExecutionResult,
    ExecutionResultCode,
    Fill,
    OrderRecord,
    OrderState,
    OrderType,
    SymbolRules,
)


logger = logging.getLogger(__name__)


TerminalListener = Callable[[OrderRecord], Awaitable[None]]


# ============================================================
# ORDER EXECUTION ENGINE
# ============================================================

class OrderExecutionEngine:
    """
    Manages order lifecycle.
    
    Handles:
    - Order creation from approved intents
    - Submission and lost-response recovery
    - State tracking and fills
    - Cancellation
    
    Fills go to the PositionTracker in the order the exchange
    reports them; terminal orders go to the tracker's history and
    to every registered terminal listener.
    """
    
    def __init__(
        self,
        adapter: ExchangeAdapter,
        tracker: PositionTracker,
        config: Optional[ExecutionEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        symbol_rules: Optional[Dict[str, SymbolRules]] = None,
        on_discrepancy: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize the engine.
        
        Args:
            adapter: Exchange adapter
            tracker: Position tracker receiving fills and reservations
            config: Execution configuration
            clock: Engine clock
            symbol_rules: Exchange rules by symbol
            on_discrepancy: Called when an order's state is unknown
                and reconciliation should run
        """
        self._adapter = adapter
        self._tracker = tracker
        self._config = config or ExecutionEngineConfig()
        self._clock = clock or SystemClock()
        self._symbol_rules: Dict[str, SymbolRules] = dict(symbol_rules or {})
        self._on_discrepancy = on_discrepancy
        
        # Every idempotency key handed out; never reused
        self._used_keys: Set[str] = set()
        
        # Active orders by client order id
        self._orders: Dict[str, OrderRecord] = {}
        self._machines: Dict[str, OrderStateMachine] = {}
        self._by_exchange_id: Dict[str, str] = {}
        
        # Recent terminal orders and results, oldest first
        self._terminal: "OrderedDict[str, OrderRecord]" = OrderedDict()
        self._results: "OrderedDict[str, ExecutionResult]" = OrderedDict()
        
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._terminal_listeners: List[TerminalListener] = []
        
        self._accepting = True
    
    # --------------------------------------------------------
    # CONFIGURATION
    # --------------------------------------------------------
    
    def set_symbol_rules(self, rules: Dict[str, SymbolRules]) -> None:
        self._symbol_rules = dict(rules)
    
    def set_discrepancy_handler(self, handler: Callable[[], None]) -> None:
        self._on_discrepancy = handler
    
    def add_terminal_listener(self, listener: TerminalListener) -> None:
        """Register an async callback for orders reaching a terminal state."""
        self._terminal_listeners.append(listener)
    
    def stop_accepting(self) -> None:
        if self._accepting:
            logger.info("Order execution engine no longer accepting submissions")
        self._accepting = False
    
    # --------------------------------------------------------
    # ORDER SUBMISSION
    # --------------------------------------------------------
    
    async def submit(
        self,
        intent: TradeIntent,
        reserve_amount: Decimal = Decimal("0"),
        client_order_id: Optional[str] = None,
        reserve_notional: Decimal = Decimal("0"),
    ) -> ExecutionResult:
        """
        Submit an order for an approved intent.
        
        Args:
            intent: Intent approved by the Risk Manager
            reserve_amount: Quote balance to hold while the order is in flight
            client_order_id: Idempotency key; generated when omitted
            reserve_notional: Exposure to hold until the order fills
        
        Returns:
            ExecutionResult with outcome. Errors are reported in the
            result; only AuthenticationError is raised.
        """
        if client_order_id is not None and client_order_id in self._used_keys:
            return await self._existing_outcome(client_order_id)
        
        if not self._accepting:
            logger.warning(f"Submission refused during shutdown: {intent.side.value} {intent.symbol}")
            return ExecutionResult(
                client_order_id=client_order_id or "",
                result_code=ExecutionResultCode.BLOCKED_SHUTDOWN,
                order_state=OrderState.REJECTED,
                symbol=intent.symbol,
                side=intent.side,
                requested_quantity=intent.quantity,
                error_message="Engine is shutting down",
            )
        
        order = self._create_order(intent, client_order_id or self._new_client_order_id())
        machine = self._register(order)
        
        logger.info(
            f"Created order {order.client_order_id}: {order.side.value} "
            f"{order.quantity} {order.symbol} @ {order.order_type.value} ({order.rationale})"
        )
        
        error = self._validate(order)
        if error is not None:
            logger.warning(f"Order {order.client_order_id} failed validation: {error}")
            machine.mark_rejected(error, timestamp=self._clock.now())
            await self._finish(order)
            return self._store(ExecutionResult.from_order(
                order, ExecutionResultCode.FAILED_VALIDATION, error,
            ))
        
        self._tracker.reserve(order, reserve_amount, reserve_notional)
        
        task = asyncio.create_task(self._execute(order))
        self._in_flight[order.client_order_id] = task
        task.add_done_callback(lambda _: self._in_flight.pop(order.client_order_id, None))
        
        return await asyncio.shield(task)
    
    async def _existing_outcome(self, client_order_id: str) -> ExecutionResult:
        task = self._in_flight.get(client_order_id)
        if task is not None:
            return await asyncio.shield(task)
        
        logger.info(f"Duplicate submission of {client_order_id}; returning existing outcome")
        result = self._results.get(client_order_id)
        if result is not None:
            return result
        
        order = self.get_order(client_order_id)
        if order is not None:
            return ExecutionResult.from_order(order, ExecutionResultCode.SUCCESS)
        
        logger.warning(f"Idempotency key {client_order_id} already used; outcome no longer retained")
        return ExecutionResult(
            client_order_id=client_order_id,
            result_code=ExecutionResultCode.FAILED_VALIDATION,
            order_state=OrderState.REJECTED,
            error_message="Idempotency key already used",
        )
    
    async def _execute(self, order: OrderRecord) -> ExecutionResult:
        """Submit until accepted, rejected, or resolved as unknown."""
        machine = self._machines[order.client_order_id]
        
        while True:
            order.submit_attempts += 1
            
            try:
                response = await self._adapter.submit_order(self._build_request(order))
            
            except OrderRejectedError as e:
                logger.error(f"Order {order.client_order_id} rejected: {e.reason} - {e.info.message}")
                machine.mark_rejected(f"{e.reason}: {e.info.message}", timestamp=self._clock.now())
                await self._finish(order)
                return self._store(ExecutionResult.from_order(
                    order, ExecutionResultCode.REJECTED_BY_EXCHANGE,
                ))
            
            except RateLimitedError as e:
                logger.warning(f"Order {order.client_order_id} rate limited: {e.info.message}")
                machine.mark_rejected(f"rate limited: {e.info.message}", timestamp=self._clock.now())
                await self._finish(order)
                return self._store(ExecutionResult.from_order(
                    order, ExecutionResultCode.REJECTED_RATE_LIMITED,
                ))
            
            except AuthenticationError as e:
                logger.critical(f"Order {order.client_order_id}: authentication failed")
                machine.mark_rejected(f"authentication failed: {e.info.message}", timestamp=self._clock.now())
                await self._finish(order)
                raise
            
            except NetworkError as e:
                order.last_error = str(e)
                outcome = await self._resolve_unknown_submission(order, e)
                if outcome is None:
                    continue
                return self._store(outcome)
            
            except ExchangeException as e:
                logger.log(e.log_level, f"Order {order.client_order_id} failed: {e}")
                machine.mark_rejected(str(e), timestamp=self._clock.now())
                await self._finish(order)
                return self._store(ExecutionResult.from_order(
                    order, ExecutionResultCode.REJECTED_BY_EXCHANGE,
                ))
            
            machine.mark_submitted(
                response.exchange_order_id,
                reason="Order accepted by exchange",
                timestamp=self._clock.now(),
            )
            self._by_exchange_id[response.exchange_order_id] = order.client_order_id
            
            # Market orders usually fill on acceptance
            await self._refresh_order(order)
            return self._store(ExecutionResult.from_order(order, ExecutionResultCode.SUCCESS))
    
    async def _resolve_unknown_submission(
        self,
        order: OrderRecord,
        error: NetworkError,
    ) -> Optional[ExecutionResult]:
        """
        Find out whether a submission whose response was lost reached the exchange.
        
        Returns:
            The final result, or None when the order should be resubmitted
        """
        machine = self._machines[order.client_order_id]
        logger.warning(
            f"Order {order.client_order_id} submission outcome unknown "
            f"(attempt {order.submit_attempts}): {error}. Querying exchange..."
        )
        
        try:
            response = await self._adapter.query_order(QueryOrderRequest(
                symbol=order.symbol,
                client_order_id=order.client_order_id,
            ))
        except AuthenticationError:
            raise
        except ExchangeException as query_error:
            order.needs_reconciliation = True
            order.last_error = f"submit: {error}; query: {query_error}"
            logger.error(
                f"Order {order.client_order_id} state unknown; left PENDING for reconciliation"
            )
            self._request_reconciliation()
            return ExecutionResult.from_order(order, ExecutionResultCode.FAILED_DISCREPANCY)
        
        if response.found and response.order is not None:
            logger.warning(
                f"Order {order.client_order_id} found on exchange after lost response; "
                f"adopting {response.order.exchange_order_id}"
            )
            await self.sync_from_exchange(order, response.order)
            return ExecutionResult.from_order(order, ExecutionResultCode.SUCCESS)
        
        max_attempts = self._config.idempotency.max_submit_attempts
        if order.submit_attempts < max_attempts:
            logger.warning(
                f"Order {order.client_order_id} unknown to exchange; "
                f"resubmitting ({order.submit_attempts}/{max_attempts})"
            )
            return None
        
        machine.mark_expired(
            f"Exchange does not know the order after {order.submit_attempts} attempts",
            timestamp=self._clock.now(),
        )
        await self._finish(order)
        return ExecutionResult.from_order(order, ExecutionResultCode.FAILED_NETWORK, str(error))
    
    def _build_request(self, order: OrderRecord) -> SubmitOrderRequest:
        return SubmitOrderRequest(
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            quantity=order.quantity,
            client_order_id=order.client_order_id,
            price=order.price,
            reduce_only=order.reduce_only,
            take_profit_price=order.take_profit_price,
            stop_loss_price=order.stop_loss_price,
        )
    
    # --------------------------------------------------------
    # ORDER CANCELLATION
    # --------------------------------------------------------
    
    async def cancel(self, client_order_id: str, reason: str = "Cancel requested") -> ExecutionResult:
        """
        Cancel an order.
        
        Cancelling an order that is already terminal is a successful no-op.
        """
        order = self.get_order(client_order_id)
        if order is None:
            return ExecutionResult(
                client_order_id=client_order_id,
                result_code=ExecutionResultCode.FAILED_VALIDATION,
                order_state=OrderState.REJECTED,
                error_message="Unknown order",
            )
        
        if order.is_terminal:
            return ExecutionResult.from_order(order, self._terminal_code(order))
        
        if order.state == OrderState.PENDING:
            return ExecutionResult.from_order(
                order, ExecutionResultCode.FAILED_VALIDATION,
                "Order not yet acknowledged by the exchange",
            )
        
        try:
            await self._adapter.cancel_order(CancelOrderRequest(
                symbol=order.symbol,
                exchange_order_id=order.exchange_order_id,
                client_order_id=order.client_order_id,
            ))
        except (OrderAlreadyTerminalError, OrderNotFoundError) as e:
            logger.info(f"Cancel of {client_order_id} not needed ({e.info.category.value}); syncing")
            await self._refresh_order(order)
            return ExecutionResult.from_order(order, self._terminal_code(order))
        except NetworkError as e:
            logger.error(f"Error cancelling order {client_order_id}: {e}")
            return ExecutionResult.from_order(order, ExecutionResultCode.FAILED_NETWORK, str(e))
        
        # Pick up fills that raced the cancel
        await self._refresh_order(order)
        if not order.is_terminal:
            self._machines[client_order_id].mark_cancelled(reason, timestamp=self._clock.now())
            await self._finish(order)
        
        logger.info(f"Order {client_order_id} cancelled: {reason}")
        return ExecutionResult.from_order(order, self._terminal_code(order))
    
    @staticmethod
    def _terminal_code(order: OrderRecord) -> ExecutionResultCode:
        if order.state == OrderState.CANCELLED:
            return ExecutionResultCode.CANCELLED
        return ExecutionResultCode.SUCCESS
    
    # --------------------------------------------------------
    # ORDER TRACKING
    # --------------------------------------------------------
    
    async def refresh_active_orders(self) -> int:
        """
        Poll every acknowledged active order.
        
        Timed-out LIMIT orders are cancelled. Timed-out orders the
        exchange does not know are expired.
        
        Returns:
            Number of orders polled
        """
        count = 0
        timeout = self._config.timeout.order_timeout_seconds
        
        for order in self.active_orders():
            if order.client_order_id in self._in_flight:
                continue
            if order.state == OrderState.PENDING and not order.needs_reconciliation:
                continue
            
            await self._refresh_order(order)
            count += 1
            
            if order.is_terminal or order.submitted_at is None:
                continue
            
            age = self._clock.seconds_since(order.submitted_at)
            if order.order_type == OrderType.LIMIT and age > timeout and order.state.allows_cancel():
                logger.info(f"Order {order.client_order_id} open for {age:.0f}s; cancelling")
                await self.cancel(order.client_order_id, reason="Order timeout")
        
        return count
    
    async def _refresh_order(self, order: OrderRecord) -> None:
        """Query one order and apply what the exchange reports."""
        try:
            response = await self._adapter.query_order(QueryOrderRequest(
                symbol=order.symbol,
                exchange_order_id=order.exchange_order_id,
                client_order_id=order.client_order_id,
            ))
        except AuthenticationError:
            raise
        except ExchangeException as e:
            logger.log(e.log_level, f"Status refresh of {order.client_order_id} failed: {e}")
            return
        
        if response.found and response.order is not None:
            await self.sync_from_exchange(order, response.order)
            return
        
        await self.handle_unknown_order(order)
    
    async def handle_unknown_order(self, order: OrderRecord) -> None:
        """The exchange positively confirmed it does not know ``order``."""
        if order.is_terminal:
            return
        machine = self._machines[order.client_order_id]
        
        if order.state == OrderState.PENDING:
            if order.needs_reconciliation:
                order.needs_reconciliation = False
                machine.mark_expired("Exchange never received the order", timestamp=self._clock.now())
                await self._finish(order)
            return
        
        started = order.submitted_at or order.created_at
        age = self._clock.seconds_since(started)
        if age > self._config.timeout.order_timeout_seconds:
            machine.mark_expired(
                f"Exchange does not know the order after {age:.0f}s",
                timestamp=self._clock.now(),
            )
            await self._finish(order)
        else:
            logger.warning(f"Order {order.client_order_id} not found on exchange yet")
    
    # --------------------------------------------------------
    # RECONCILIATION HOOKS
    # --------------------------------------------------------
    
    async def sync_from_exchange(self, order: OrderRecord, remote: ExchangeOrder) -> None:
        """
        Apply the exchange's view of ``order``.
        
        Executed-quantity deltas become Fills; terminal statuses
        become transitions.
        """
        if order.is_terminal:
            return
        
        machine = self._machines[order.client_order_id]
        now = self._clock.now()
        
        if remote.exchange_order_id and order.exchange_order_id != remote.exchange_order_id:
            self._by_exchange_id[remote.exchange_order_id] = order.client_order_id
        
        if order.state == OrderState.PENDING and remote.exchange_order_id:
            order.needs_reconciliation = False
            machine.mark_submitted(remote.exchange_order_id, "Adopted from exchange", timestamp=now)
        
        if order.state == OrderState.PENDING:
            logger.warning(f"Order {order.client_order_id}: exchange status without an order id")
            return
        
        self._apply_executions(order, remote, report=True)
        machine.apply_fill_state("Exchange reported execution", timestamp=now)
        
        if not order.is_terminal and remote.status.is_terminal():
            if remote.status == OrderState.FILLED:
                # Status says filled but executed quantity lags; keep polling
                logger.warning(
                    f"Order {order.client_order_id} reported FILLED with "
                    f"{remote.executed_quantity}/{order.quantity} executed"
                )
            elif remote.status == OrderState.REJECTED and order.state == OrderState.SUBMITTED:
                machine.mark_rejected("Rejected by exchange", timestamp=now)
            elif remote.status == OrderState.EXPIRED:
                machine.mark_expired("Expired on exchange", timestamp=now)
            else:
                machine.mark_cancelled("Cancelled on exchange", timestamp=now)
        
        if order.is_terminal:
            await self._finish(order)
    
    async def import_order(self, remote: ExchangeOrder) -> OrderRecord:
        """
        Adopt an open exchange order that is not tracked locally.
        
        Executions that happened before the import are recorded on the
        order but not reported to the tracker; the account snapshot
        already reflects them.
        """
        client_order_id = remote.client_order_id or f"IMPORTED_{remote.exchange_order_id}"
        existing = self.get_order(client_order_id)
        if existing is not None:
            await self.sync_from_exchange(existing, remote)
            return existing
        
        order = OrderRecord(
            client_order_id=client_order_id,
            symbol=remote.symbol,
            side=remote.side,
            quantity=remote.quantity,
            order_type=remote.order_type,
            price=remote.price,
            reduce_only=remote.reduce_only,
            created_at=self._clock.now(),
            updated_at=self._clock.now(),
            rationale="imported",
            imported=True,
        )
        machine = self._register(order)
        
        logger.warning(
            f"Importing exchange order {remote.exchange_order_id} ({client_order_id}): "
            f"{remote.side.value} {remote.quantity} {remote.symbol}"
        )
        
        if remote.exchange_order_id:
            self._by_exchange_id[remote.exchange_order_id] = client_order_id
            machine.mark_submitted(remote.exchange_order_id, "Imported from exchange", timestamp=self._clock.now())
        self._apply_executions(order, remote, report=False)
        machine.apply_fill_state("Imported execution", timestamp=self._clock.now())
        
        if order.is_terminal:
            await self._finish(order)
        return order
    
    def _apply_executions(self, order: OrderRecord, remote: ExchangeOrder, report: bool) -> None:
        """Convert the growth in executed quantity into one Fill."""
        executed = remote.executed_quantity
        if executed > order.quantity:
            logger.error(
                f"Order {order.client_order_id}: exchange executed {executed} "
                f"exceeds requested {order.quantity}; clamping"
            )
            executed = order.quantity
            self._request_reconciliation()
        
        delta = executed - order.filled_quantity
        if delta <= 0:
            return
        
        prior_notional = sum((f.notional for f in order.fills), Decimal("0"))
        price = None
        if remote.average_price is not None:
            price = (executed * remote.average_price - prior_notional) / delta
            if price <= 0:
                price = remote.average_price
        if price is None:
            price = remote.price or order.price or order.reference_price or Decimal("0")
        
        fee = max(remote.fee - order.total_fee, Decimal("0"))
        
        fill = Fill(
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            side=order.side,
            quantity=delta,
            price=price,
            fee=fee,
            timestamp=self._clock.now(),
        )
        order.fills.append(fill)
        
        if report:
            self._tracker.apply_fill(fill)
    
    # --------------------------------------------------------
    # SHUTDOWN
    # --------------------------------------------------------
    
    async def drain(self) -> None:
        """Wait for every in-flight submission to finish."""
        tasks = list(self._in_flight.values())
        if not tasks:
            return
        
        logger.info(f"Waiting for {len(tasks)} in-flight submission(s)")
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"In-flight submission ended with error: {result!r}")
    
    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)
    
    # --------------------------------------------------------
    # GETTERS
    # --------------------------------------------------------
    
    def get_order(self, client_order_id: str) -> Optional[OrderRecord]:
        """Active order, or a terminal one still in the history window."""
        order = self._orders.get(client_order_id)
        if order is None:
            order = self._terminal.get(client_order_id)
        return order
    
    def get_order_by_exchange_id(self, exchange_order_id: str) -> Optional[OrderRecord]:
        client_order_id = self._by_exchange_id.get(exchange_order_id)
        if client_order_id:
            return self.get_order(client_order_id)
        return None
    
    def active_orders(self, symbol: Optional[str] = None) -> List[OrderRecord]:
        return [
            o for o in self._orders.values()
            if o.state.is_active() and (symbol is None or o.symbol == symbol)
        ]
    
    def active_symbols(self) -> Set[str]:
        return {o.symbol for o in self._orders.values() if o.state.is_active()}
    
    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------
    
    def _new_client_order_id(self) -> str:
        prefix = self._config.idempotency.client_order_id_prefix
        while True:
            candidate = f"{prefix}{uuid.uuid4().hex}"
            if candidate not in self._used_keys:
                return candidate
    
    def _create_order(self, intent: TradeIntent, client_order_id: str) -> OrderRecord:
        now = self._clock.now()
        quantity = intent.quantity
        price = intent.limit_price if intent.order_type == OrderType.LIMIT else None
        take_profit = intent.take_profit_price
        stop_loss = intent.stop_loss_price
        
        rules = self._symbol_rules.get(intent.symbol)
        if rules is not None:
            quantity = rules.round_quantity(quantity)
            if price is not None:
                price = rules.round_price(price)
            if take_profit is not None:
                take_profit = rules.round_price(take_profit)
            if stop_loss is not None:
                stop_loss = rules.round_price(stop_loss)
        
        return OrderRecord(
            client_order_id=client_order_id,
            symbol=intent.symbol,
            side=intent.side,
            quantity=quantity,
            order_type=intent.order_type,
            price=price,
            reduce_only=intent.reduce_only,
            take_profit_price=take_profit,
            stop_loss_price=stop_loss,
            created_at=now,
            updated_at=now,
            rationale=intent.rationale,
            reference_price=intent.reference_price,
        )
    
    def _validate(self, order: OrderRecord) -> Optional[str]:
        """Return an error message when the order breaks the symbol rules."""
        if order.quantity <= 0:
            return f"Quantity {order.quantity} is not positive after rounding"
        if order.order_type == OrderType.LIMIT and order.price is None:
            return "LIMIT order without a price"
        
        rules = self._symbol_rules.get(order.symbol)
        if rules is None:
            return None
        
        if not rules.is_quantity_valid(order.quantity):
            return f"Quantity {order.quantity} below minimum {rules.min_quantity}"
        
        price = order.price or order.reference_price
        if not order.reduce_only and not rules.is_notional_valid(order.quantity, price):
            return f"Notional {order.quantity * price} below minimum {rules.min_notional}"
        return None
    
    def _register(self, order: OrderRecord) -> OrderStateMachine:
        machine = OrderStateMachine(order)
        self._used_keys.add(order.client_order_id)
        self._orders[order.client_order_id] = order
        self._machines[order.client_order_id] = machine
        return machine
    
    def _store(self, result: ExecutionResult) -> ExecutionResult:
        self._results[result.client_order_id] = result
        self._results.move_to_end(result.client_order_id)
        while len(self._results) > self._config.idempotency.terminal_history_size:
            self._results.popitem(last=False)
        return result
    
    def _request_reconciliation(self) -> None:
        if self._on_discrepancy is not None:
            self._on_discrepancy()
    
    async def _finish(self, order: OrderRecord) -> None:
        """Report a terminal order exactly once and move it to the history window."""
        if self._orders.get(order.client_order_id) is not order:
            return
        self._retire(order)
        
        self._tracker.record_terminal_order(order)
        
        for listener in self._terminal_listeners:
            try:
                await listener(order)
            except Exception as e:
                logger.exception(f"Terminal listener failed for {order.client_order_id}: {e}")
    
    def _retire(self, order: OrderRecord) -> None:
        """Drop a terminal order's live state; keep a bounded history."""
        client_order_id = order.client_order_id
        del self._orders[client_order_id]
        self._machines.pop(client_order_id, None)
        
        self._terminal[client_order_id] = order
        while len(self._terminal) > self._config.idempotency.terminal_history_size:
            _, evicted = self._terminal.popitem(last=False)
            if evicted.exchange_order_id:
                self._by_exchange_id.pop(evicted.exchange_order_id, None)
