"""
Strategy Engine - MACD Momentum Strategy.

============================================================
PURPOSE
============================================================
Trades accelerating MACD histogram momentum, confirmed by
order book pressure and the price's position in its recent
range.

============================================================
SIGNAL LOGIC
============================================================
BUY when:
- Histogram rose on each of the last two bars and the rise
  is accelerating
- Last bar changed by more than momentum_change_pct
- MACD is above (or within cross_tolerance of) the signal line
- |histogram change| exceeds min_strength
- Bid volume near price outweighs ask volume (when depth known)
- Window trend / range position is bullish and spread is tight

SELL mirrors BUY.

A signal on the side already held is ignored. A signal against
the held side closes the position.

============================================================
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from execution_engine.types import OrderSide
from market_data.types import Tick
from position_tracker.types import PositionView
from strategy_engine.config import MACDConfig
from strategy_engine.types import MarketState, TradeIntent


class Momentum(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


@dataclass(frozen=True)
class MACDPoint:
    macd: float
    signal: float
    histogram: float


# ============================================================
# INDICATORS
# ============================================================

def ema_series(values: Sequence[float], period: int) -> List[float]:
    """Exponential moving average seeded with the first value."""
    if not values:
        return []
    multiplier = 2.0 / (period + 1.0)
    ema = values[0]
    series = [ema]
    for value in values[1:]:
        ema = value * multiplier + ema * (1.0 - multiplier)
        series.append(ema)
    return series


def compute_macd(
    prices: Sequence[float],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> List[MACDPoint]:
    """
    MACD line, signal line and histogram.
    
    Bars start once both the slow EMA and the signal EMA have
    a full period of input.
    """
    if len(prices) < slow_period + signal_period - 1:
        return []
    
    fast = ema_series(prices, fast_period)
    slow = ema_series(prices, slow_period)
    macd_line = [f - s for f, s in zip(fast, slow)][slow_period - 1:]
    signal_line = ema_series(macd_line, signal_period)
    
    return [
        MACDPoint(macd=m, signal=s, histogram=m - s)
        for m, s in zip(macd_line, signal_line)
    ][signal_period - 1:]


# ============================================================
# STRATEGY
# ============================================================

class MACDMomentumStrategy:
    """MACD histogram momentum strategy with book and range confirmation."""
    
    def __init__(self, config: Optional[MACDConfig] = None):
        self.config = config or MACDConfig()
    
    @property
    def name(self) -> str:
        return "macd_momentum"
    
    def evaluate(
        self,
        market: MarketState,
        position: Optional[PositionView],
    ) -> Sequence[TradeIntent]:
        """
        Evaluate the window for one symbol.
        
        Args:
            market: Recent ticks for the symbol
            position: Current position, if any
        
        Returns:
            At most one TradeIntent
        """
        cfg = self.config
        tick = market.latest
        if tick is None or len(market) < cfg.min_ticks:
            return ()
        
        quantity = cfg.quantity_for(market.symbol)
        if not quantity:
            return ()
        
        points = compute_macd(
            [float(p) for p in market.prices],
            cfg.fast_period, cfg.slow_period, cfg.signal_period,
        )
        signal, strength = self.momentum(points)
        if signal == Momentum.HOLD or strength <= cfg.min_strength:
            return ()
        
        held = position.quantity if position is not None else Decimal("0")
        side = OrderSide.BUY if signal == Momentum.BUY else OrderSide.SELL
        
        if held * side.sign > 0:
            return ()
        
        bullish, bearish = self.window_bias(market.prices, tick)
        strong_bid, strong_ask = self.depth_pressure(tick)
        if side == OrderSide.BUY and not (bullish and strong_bid):
            return ()
        if side == OrderSide.SELL and not (bearish and strong_ask):
            return ()
        
        if held != 0:
            return (TradeIntent(
                symbol=market.symbol,
                side=side,
                quantity=abs(held),
                rationale=f"{self.name}_exit",
                reference_price=tick.last,
                reduce_only=True,
            ),)
        
        return (TradeIntent(
            symbol=market.symbol,
            side=side,
            quantity=quantity,
            rationale=f"{self.name}_{'long' if side == OrderSide.BUY else 'short'}",
            reference_price=tick.last,
        ),)
    
    # --------------------------------------------------------
    # MOMENTUM
    # --------------------------------------------------------
    
    def momentum(self, points: Sequence[MACDPoint]) -> Tuple[Momentum, float]:
        """
        Classify the last three histogram bars.
        
        Returns:
            (signal, strength) where strength is |last histogram change|
        """
        if len(points) < 3:
            return Momentum.HOLD, 0.0
        
        prev_prev, previous, current = points[-3], points[-2], points[-1]
        curr_change = current.histogram - previous.histogram
        prev_change = previous.histogram - prev_prev.histogram
        acceleration = curr_change - prev_change
        strength = abs(curr_change)
        
        if previous.histogram == 0:
            change_pct = math.inf
        else:
            change_pct = abs(curr_change) / abs(previous.histogram) * 100.0
        
        if change_pct <= self.config.momentum_change_pct:
            return Momentum.HOLD, strength
        
        near_cross = self._near_cross(current)
        
        if curr_change > 0 and prev_change > 0 and acceleration > 0:
            if current.macd >= current.signal or near_cross:
                return Momentum.BUY, strength
        elif curr_change < 0 and prev_change < 0 and acceleration < 0:
            if current.macd <= current.signal or near_cross:
                return Momentum.SELL, strength
        
        return Momentum.HOLD, strength
    
    def _near_cross(self, point: MACDPoint) -> bool:
        if point.signal == 0:
            return point.macd == 0
        return abs(point.macd - point.signal) / abs(point.signal) < self.config.cross_tolerance
    
    # --------------------------------------------------------
    # CONFIRMATION
    # --------------------------------------------------------
    
    def depth_pressure(self, tick: Tick) -> Tuple[bool, bool]:
        """
        (strong_bid, strong_ask) from book levels near the price.
        
        Without depth both sides count as confirmed.
        """
        cfg = self.config
        if not cfg.use_depth_confirmation or tick.depth is None:
            return True, True
        
        band = tick.last * Decimal(str(cfg.depth_band_pct)) / 100
        bid_volume = tick.depth.bid_volume_above(tick.last - band)
        ask_volume = tick.depth.ask_volume_below(tick.last + band)
        
        ratio = Decimal(str(cfg.depth_pressure_ratio))
        strong_bid = ask_volume > 0 and bid_volume / ask_volume > ratio
        strong_ask = bid_volume > 0 and ask_volume / bid_volume > ratio
        return strong_bid, strong_ask
    
    def window_bias(self, prices: Sequence[Decimal], tick: Tick) -> Tuple[bool, bool]:
        """(bullish, bearish) from the window's change, range position and spread."""
        cfg = self.config
        if float(tick.spread_pct) > cfg.max_spread_pct:
            return False, False
        if not cfg.use_window_confirmation:
            return True, True
        
        first, last = float(prices[0]), float(prices[-1])
        low, high = float(min(prices)), float(max(prices))
        if first <= 0 or low <= 0:
            return True, True
        
        change_pct = (last - first) / first * 100.0
        volatility = (high - low) / low * 100.0
        position = (last - low) / (high - low) * 100.0 if high > low else 50.0
        
        bullish = change_pct > cfg.trend_change_pct
        bearish = change_pct < -cfg.trend_change_pct
        
        if position < cfg.range_low_pct:
            bullish = True
        elif position > cfg.range_high_pct:
            bearish = True
        
        if volatility > cfg.volatile_range_pct:
            bullish = bullish and position < cfg.volatile_low_pct
            bearish = bearish and position > cfg.volatile_high_pct
        
        return bullish, bearish
