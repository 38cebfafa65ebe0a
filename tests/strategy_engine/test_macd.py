"""
MACD Momentum Strategy Tests.

============================================================
COVERAGE
============================================================
- EMA / MACD series
- Histogram momentum classification
- Order book and window confirmation
- Position-aware intents
============================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from execution_engine.types import OrderSide
from market_data.types import DepthSnapshot, Tick
from position_tracker.types import Position
from strategy_engine import MACDConfig, MACDMomentumStrategy, MarketState, Strategy
from strategy_engine.strategies import MACDPoint, Momentum, compute_macd, ema_series


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
BTC = "BTC-USDT"


def _tick(price, seconds: int = 0, depth=None) -> Tick:
    last = Decimal(str(price))
    return Tick(
        symbol=BTC,
        timestamp=T0 + timedelta(seconds=seconds),
        bid=last - Decimal("0.01"),
        ask=last + Decimal("0.01"),
        last=last,
        depth=depth,
    )


def _market(prices) -> MarketState:
    return MarketState(symbol=BTC, ticks=tuple(_tick(p, i) for i, p in enumerate(prices)))


def _points(*histograms, below_signal: bool = False):
    offset = -1.0 if below_signal else 1.0
    return [MACDPoint(macd=10.0 + offset * abs(h), signal=10.0, histogram=h) for h in histograms]


def _held(quantity: str) -> Position:
    return Position(symbol=BTC, quantity=Decimal(quantity), average_entry_price=Decimal("100")).freeze()


@pytest.fixture
def strategy():
    return MACDMomentumStrategy(MACDConfig(default_quantity=Decimal("0.01")))


# =============================================================================
# INDICATORS
# =============================================================================

class TestIndicators:
    """Tests for ema_series and compute_macd."""
    
    def test_ema_seeded_with_first_value(self):
        assert ema_series([2.0, 4.0, 4.0], 3) == [2.0, 3.0, 3.5]
        assert ema_series([], 3) == []
    
    def test_macd_length(self):
        assert compute_macd([100.0] * 33) == []
        assert len(compute_macd([100.0] * 34)) == 1
        assert len(compute_macd([100.0] * 40)) == 7
    
    def test_flat_prices_zero_histogram(self):
        assert all(p.histogram == 0 for p in compute_macd([100.0] * 40))
    
    def test_rising_prices_positive_macd(self):
        points = compute_macd([100.0 + i for i in range(60)])
        
        assert all(p.macd > 0 for p in points)


# =============================================================================
# MOMENTUM
# =============================================================================

class TestMomentum:
    """Tests for histogram classification."""
    
    def test_accelerating_rise_is_buy(self, strategy):
        signal, strength = strategy.momentum(_points(0.1, 0.2, 0.4))
        
        assert signal == Momentum.BUY
        assert strength == pytest.approx(0.2)
    
    def test_accelerating_fall_is_sell(self, strategy):
        signal, _ = strategy.momentum(_points(-0.1, -0.2, -0.4, below_signal=True))
        
        assert signal == Momentum.SELL
    
    def test_decelerating_rise_holds(self, strategy):
        signal, _ = strategy.momentum(_points(0.1, 0.3, 0.4))
        
        assert signal == Momentum.HOLD
    
    def test_small_change_holds(self, strategy):
        signal, _ = strategy.momentum(_points(1.0, 1.01, 1.025))
        
        assert signal == Momentum.HOLD
    
    def test_near_cross_allows_buy_below_signal(self, strategy):
        points = _points(0.1, 0.2) + [MACDPoint(macd=9.9995, signal=10.0, histogram=0.4)]
        
        signal, _ = strategy.momentum(points)
        
        assert signal == Momentum.BUY
    
    def test_rise_below_signal_holds(self, strategy):
        points = _points(0.1, 0.2) + [MACDPoint(macd=9.0, signal=10.0, histogram=0.4)]
        
        signal, _ = strategy.momentum(points)
        
        assert signal == Momentum.HOLD
    
    def test_too_few_points(self, strategy):
        assert strategy.momentum(_points(0.1, 0.2)) == (Momentum.HOLD, 0.0)


# =============================================================================
# CONFIRMATION
# =============================================================================

class TestConfirmation:
    """Tests for depth_pressure and window_bias."""
    
    def test_depth_pressure_bid_side(self, strategy):
        depth = DepthSnapshot(
            bids=((Decimal("99.5"), Decimal("5")), (Decimal("98"), Decimal("100"))),
            asks=((Decimal("100.5"), Decimal("2")),),
        )
        
        assert strategy.depth_pressure(_tick(100, depth=depth)) == (True, False)
    
    def test_depth_pressure_without_book(self, strategy):
        assert strategy.depth_pressure(_tick(100)) == (True, True)
    
    def test_window_uptrend(self, strategy):
        prices = [Decimal("100"), Decimal("100.5"), Decimal("100.3")]
        
        assert strategy.window_bias(prices, _tick(prices[-1])) == (True, False)
    
    def test_window_downtrend(self, strategy):
        prices = [Decimal("100"), Decimal("99.5"), Decimal("99.7")]
        
        assert strategy.window_bias(prices, _tick(prices[-1])) == (False, True)
    
    def test_volatile_window_mid_range(self, strategy):
        prices = [Decimal("100"), Decimal("105"), Decimal("103")]
        
        assert strategy.window_bias(prices, _tick(prices[-1])) == (False, False)
    
    def test_wide_spread_cancels(self, strategy):
        tick = Tick(symbol=BTC, timestamp=T0, bid=Decimal("100"), ask=Decimal("101"), last=Decimal("100.5"))
        
        assert strategy.window_bias([Decimal("100"), Decimal("100.5")], tick) == (False, False)


# =============================================================================
# EVALUATION
# =============================================================================

class TestEvaluate:
    """Tests for position-aware intents."""
    
    RISING = [100 + i * 0.01 for i in range(40)]
    
    def _forced(self, strategy, signal):
        strategy.momentum = lambda points: (signal, 1.0)
        return strategy
    
    def test_satisfies_protocol(self, strategy):
        assert isinstance(strategy, Strategy)
    
    def test_flat_buy_opens_long(self, strategy):
        intents = self._forced(strategy, Momentum.BUY).evaluate(_market(self.RISING), None)
        
        assert len(intents) == 1
        assert intents[0].side == OrderSide.BUY
        assert intents[0].quantity == Decimal("0.01")
        assert intents[0].rationale == "macd_momentum_long"
        assert intents[0].reference_price == Decimal(str(self.RISING[-1]))
        assert not intents[0].reduce_only
    
    def test_signal_on_held_side_ignored(self, strategy):
        intents = self._forced(strategy, Momentum.BUY).evaluate(_market(self.RISING), _held("0.5"))
        
        assert intents == ()
    
    def test_opposite_signal_closes_position(self, strategy):
        intents = self._forced(strategy, Momentum.SELL).evaluate(_market(self.RISING), _held("0.5"))
        
        assert intents[0].side == OrderSide.SELL
        assert intents[0].quantity == Decimal("0.5")
        assert intents[0].reduce_only
        assert intents[0].rationale == "macd_momentum_exit"
    
    def test_short_closed_by_buy(self, strategy):
        intents = self._forced(strategy, Momentum.BUY).evaluate(_market(self.RISING), _held("-0.2"))
        
        assert intents[0].side == OrderSide.BUY
        assert intents[0].quantity == Decimal("0.2")
    
    def test_short_window_no_intents(self, strategy):
        intents = self._forced(strategy, Momentum.BUY).evaluate(_market(self.RISING[:10]), None)
        
        assert intents == ()
    
    def test_no_quantity_configured(self):
        strategy = self._forced(MACDMomentumStrategy(MACDConfig()), Momentum.BUY)
        
        assert strategy.evaluate(_market(self.RISING), None) == ()
    
    def test_weak_strength_ignored(self, strategy):
        strategy.momentum = lambda points: (Momentum.BUY, 0.00001)
        
        assert strategy.evaluate(_market(self.RISING), None) == ()
    
    def test_deterministic(self, strategy):
        prices = [100 + (i % 7) * 0.3 + i * 0.02 for i in range(80)]
        
        assert strategy.evaluate(_market(prices), None) == strategy.evaluate(_market(prices), None)
