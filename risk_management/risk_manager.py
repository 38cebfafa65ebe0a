"""
Risk Management - Risk Manager.

============================================================
PURPOSE
============================================================
The RiskManager is the MANDATORY GATE between the Strategy
Engine and the Order Execution Engine.

Evaluation is pure: it reads an immutable AccountView and a
TradeIntent and returns a RiskDecision. It never mutates
account state.

============================================================
DECISION LOGIC (PSEUDOCODE)
============================================================

def evaluate(view, intent):
    if intent.forced:
        return APPROVE (unchanged)
    
    # STEP 1: State freshness
    if view is stale or snapshot too old:
        return REJECT (STATE_STALE)
    if view is blocked:
        return REJECT (STATE_BLOCKED)
    
    # STEP 2: Per-symbol headroom  M - s*q
    # STEP 3: Aggregate exposure headroom
    quantity = min(requested, symbol headroom, aggregate headroom)
    if quantity <= 0:
        return REJECT
    
    # STEP 4: Available balance
    if increasing notional * (1 + fee buffer) > available:
        return REJECT (INSUFFICIENT_BALANCE)
    
    # STEP 5: Exchange-side brackets
    attach take profit / stop loss trigger prices to entries
    
    return APPROVE (sized)

Stop loss / take profit is checked separately by check_exits(),
which emits forced reduce-only intents.

============================================================
"""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from execution_engine.types import OrderSide, OrderType
from position_tracker.types import AccountView, PositionView
from strategy_engine.types import TradeIntent

from .config import RiskLimits


logger = logging.getLogger(__name__)


ZERO = Decimal("0")


# ============================================================
# DECISION TYPES
# ============================================================

class RejectReason(str, Enum):
    """Why an intent was rejected."""
    
    INVALID_INTENT = "invalid_intent"
    NO_PRICE = "no_price"
    STATE_STALE = "state_stale"
    STATE_BLOCKED = "state_blocked"
    POSITION_LIMIT = "position_limit"
    EXPOSURE_LIMIT = "exposure_limit"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NOTHING_TO_REDUCE = "nothing_to_reduce"


@dataclass(frozen=True)
class RiskDecision:
    """Result of one risk evaluation."""
    
    approved: bool
    
    intent: TradeIntent
    """Sized intent when approved; the original intent otherwise."""
    
    reason: Optional[RejectReason] = None
    
    message: str = ""
    
    required_balance: Decimal = ZERO
    """Quote balance the Execution Engine should reserve."""
    
    required_notional: Decimal = ZERO
    """Exposure the Execution Engine should reserve until the order fills."""
    
    @classmethod
    def approve(
        cls,
        intent: TradeIntent,
        required_balance: Decimal = ZERO,
        required_notional: Decimal = ZERO,
    ) -> "RiskDecision":
        return cls(
            approved=True,
            intent=intent,
            required_balance=required_balance,
            required_notional=required_notional,
        )
    
    @classmethod
    def reject(cls, intent: TradeIntent, reason: RejectReason, message: str) -> "RiskDecision":
        return cls(approved=False, intent=intent, reason=reason, message=message)


# ============================================================
# RISK MANAGER
# ============================================================

class RiskManager:
    """
    Risk gate for Trade Intents.
    
    Checks run in order; the first failure wins.
    """
    
    def __init__(self, limits: Optional[RiskLimits] = None):
        self._limits = limits or RiskLimits()
    
    @property
    def limits(self) -> RiskLimits:
        return self._limits
    
    # --------------------------------------------------------
    # PRIMARY INTERFACE
    # --------------------------------------------------------
    
    def evaluate(self, view: AccountView, intent: TradeIntent) -> RiskDecision:
        """
        Evaluate an intent against the current account view.
        
        Args:
            view: Immutable account state
            intent: Proposed trade
        
        Returns:
            RiskDecision, approved with a possibly reduced quantity or
            rejected with a reason
        """
        if intent.forced:
            logger.info(
                f"Forced {intent.rationale} exit approved: {intent.side.value} "
                f"{intent.quantity} {intent.symbol}"
            )
            return RiskDecision.approve(intent)
        
        decision = self._evaluate(view, intent)
        
        if decision.approved:
            logger.info(
                f"Approved {intent.side.value} {decision.intent.quantity} {intent.symbol} "
                f"(requested {intent.quantity}, reserve {decision.required_balance:.4f})"
            )
        else:
            logger.info(
                f"Rejected {intent.side.value} {intent.quantity} {intent.symbol}: "
                f"{decision.reason.value} - {decision.message}"
            )
        return decision
    
    def _evaluate(self, view: AccountView, intent: TradeIntent) -> RiskDecision:
        limits = self._limits
        
        if intent.quantity <= 0:
            return RiskDecision.reject(intent, RejectReason.INVALID_INTENT, "Quantity must be positive")
        
        # STEP 1: State freshness
        if view.stale:
            return RiskDecision.reject(
                intent, RejectReason.STATE_STALE, f"Account state stale: {view.stale_reason}",
            )
        if view.snapshot_age_seconds > limits.max_snapshot_age_seconds:
            return RiskDecision.reject(
                intent, RejectReason.STATE_STALE,
                f"Snapshot age {view.snapshot_age_seconds:.0f}s exceeds "
                f"{limits.max_snapshot_age_seconds:.0f}s",
            )
        if view.is_blocked:
            return RiskDecision.reject(
                intent, RejectReason.STATE_BLOCKED, f"Submissions blocked: {view.blocked_reason}",
            )
        
        price = self._price_for(view, intent)
        if price is None or price <= 0:
            return RiskDecision.reject(intent, RejectReason.NO_PRICE, "No price for sizing")
        
        position = view.position_quantity(intent.symbol)
        sign = intent.side.sign
        reducing_capacity = abs(position) if sign * position < 0 else ZERO
        
        if intent.reduce_only:
            if reducing_capacity == 0:
                return RiskDecision.reject(
                    intent, RejectReason.NOTHING_TO_REDUCE, f"No position to reduce in {intent.symbol}",
                )
            quantity = min(intent.quantity, reducing_capacity)
            return RiskDecision.approve(intent.with_quantity(quantity))
        
        # STEP 2: Per-symbol headroom
        symbol_headroom = limits.position_limit(intent.symbol) / price - sign * position
        if symbol_headroom <= 0:
            return RiskDecision.reject(
                intent, RejectReason.POSITION_LIMIT,
                f"Position {position} at limit {limits.position_limit(intent.symbol)} notional",
            )
        
        # STEP 3: Aggregate exposure headroom
        exposure_room = limits.max_exposure_ratio * view.equity - view.committed_exposure
        aggregate_headroom = reducing_capacity + max(exposure_room, ZERO) / price
        if aggregate_headroom <= 0:
            return RiskDecision.reject(
                intent, RejectReason.EXPOSURE_LIMIT,
                f"Exposure {view.gross_exposure} + in flight {view.reserved_notional} at limit",
            )
        
        quantity = min(intent.quantity, symbol_headroom, aggregate_headroom)
        if quantity <= 0:
            return RiskDecision.reject(intent, RejectReason.EXPOSURE_LIMIT, "No headroom left")
        
        # STEP 4: Available balance
        increasing = max(quantity - reducing_capacity, ZERO)
        notional = increasing * price
        required = notional * (1 + limits.fee_buffer_rate)
        available = view.available_balance
        if required > available:
            return RiskDecision.reject(
                intent, RejectReason.INSUFFICIENT_BALANCE,
                f"Requires {required:.4f} {view.quote_asset}, available {available:.4f}",
            )
        
        sized = intent if quantity == intent.quantity else intent.with_quantity(quantity)
        if limits.exchange_brackets and increasing > 0:
            sized = self._with_brackets(sized, price)
        return RiskDecision.approve(sized, required_balance=required, required_notional=notional)
    
    def _with_brackets(self, intent: TradeIntent, price: Decimal) -> TradeIntent:
        """Attach take profit and stop loss trigger prices around the entry price."""
        take_profit = self._limits.take_profit_pct / 100
        stop_loss = self._limits.stop_loss_pct / 100
        sign = intent.side.sign
        return replace(
            intent,
            take_profit_price=price * (1 + sign * take_profit),
            stop_loss_price=price * (1 - sign * stop_loss),
        )
    
    @staticmethod
    def _price_for(view: AccountView, intent: TradeIntent) -> Optional[Decimal]:
        if intent.order_type == OrderType.LIMIT and intent.limit_price is not None:
            return intent.limit_price
        if intent.reference_price is not None:
            return intent.reference_price
        return view.mark_price(intent.symbol)
    
    # --------------------------------------------------------
    # STOP LOSS / TAKE PROFIT
    # --------------------------------------------------------
    
    def check_exits(self, view: AccountView) -> List[TradeIntent]:
        """
        Emit forced closing intents for positions past their exit thresholds.
        
        Returns:
            Reduce-only intents closing the whole position
        """
        intents: List[TradeIntent] = []
        for position in view.positions.values():
            intent = self.exit_for(position)
            if intent is not None:
                intents.append(intent)
        return intents
    
    def exit_for(self, position: PositionView) -> Optional[TradeIntent]:
        if position.is_flat or position.mark_price is None:
            return None
        
        pnl_pct = position.unrealized_pnl_pct
        if pnl_pct <= -self._limits.stop_loss_pct:
            rationale = "stop_loss"
        elif pnl_pct >= self._limits.take_profit_pct:
            rationale = "take_profit"
        else:
            return None
        
        logger.warning(
            f"{position.symbol} {rationale}: unrealized {pnl_pct:.2f}% "
            f"(entry {position.average_entry_price}, mark {position.mark_price})"
        )
        side = OrderSide.SELL if position.is_long else OrderSide.BUY
        return TradeIntent(
            symbol=position.symbol,
            side=side,
            quantity=abs(position.quantity),
            rationale=rationale,
            reference_price=position.mark_price,
            reduce_only=True,
            forced=True,
        )
