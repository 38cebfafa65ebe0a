"""
Exchange Adapter Tests.

============================================================
PURPOSE
============================================================
Unit tests for the exchange client layer.

TEST CATEGORIES:
- Signing tests: canonical query and HMAC signature
- Error mapping tests: BingX code translation
- Logging tests: Credential masking
- Rate limiter tests: Token bucket waits and timeouts
- Retry tests: Backoff, exhaustion, auth short-circuit
- BingX adapter tests: Request pipeline with a mocked session
- Mock adapter tests: Scripted failures and streams

============================================================
"""

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from core.clock import MockClock
from core.credentials import Credential, TradingContext
from execution_engine.adapters import (
    API_KEY_HEADER,
    AuthenticationError,
    BingXAdapter,
    ErrorCategory,
    HmacSha256Signer,
    MockConfig,
    MockExchangeAdapter,
    NetworkError,
    OrderAlreadyTerminalError,
    OrderNotFoundError,
    OrderRejectedError,
    QueryOrderRequest,
    RateLimitedError,
    RetryEligibility,
    RetryPolicy,
    StreamDisconnectedError,
    SubmitOrderRequest,
    CancelOrderRequest,
    TokenBucket,
    canonical_query,
    create_network_error,
    create_rate_limit_error,
    create_timeout_error,
    map_bingx_error,
    mask_headers,
    mask_params,
    mask_url,
    mask_value,
    to_exception,
)
from execution_engine.config import ExecutionEngineConfig, RetryConfig
from execution_engine.types import OrderSide, OrderState, OrderType
from market_data.types import Tick


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeTime:
    """Monotonic clock and sleep that only move when slept on."""
    
    def __init__(self):
        self.now = 0.0
        self.sleeps = []
    
    def monotonic(self) -> float:
        return self.now
    
    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ============================================================
# SIGNING TESTS
# ============================================================

class TestSigning:
    """Tests for request signing."""
    
    def test_canonical_query_sorted(self):
        """Parameters are sorted by key and not URL encoded."""
        query = canonical_query({"symbol": "BTC-USDT", "quantity": "0.5", "timestamp": 1700000000000})
        
        assert query == "quantity=0.5&symbol=BTC-USDT&timestamp=1700000000000"
    
    def test_signature_is_hmac_sha256_hex(self):
        """Signature equals HMAC-SHA256 of the canonical query with the secret."""
        signer = HmacSha256Signer(Credential(api_key="key123", api_secret="secret456"))
        params = {"timestamp": 1700000000000, "symbol": "BTC-USDT"}
        
        signed = signer.sign(params)
        
        expected = hmac.new(
            b"secret456",
            b"symbol=BTC-USDT&timestamp=1700000000000",
            hashlib.sha256,
        ).hexdigest()
        assert signed["signature"] == expected
        assert len(signed["signature"]) == 64
        assert "signature" not in params
    
    def test_headers_carry_api_key(self):
        """API key travels in the X-BX-APIKEY header."""
        signer = HmacSha256Signer(Credential(api_key="key123", api_secret="secret456"))
        
        assert signer.headers() == {API_KEY_HEADER: "key123"}
    
    def test_repr_hides_secret(self):
        """Signer repr never shows the secret."""
        signer = HmacSha256Signer(Credential(api_key="abcdefghijkl", api_secret="topsecretvalue"))
        
        assert "topsecretvalue" not in repr(signer)


# ============================================================
# ERROR MAPPING TESTS
# ============================================================

class TestBingXErrorMapping:
    """Tests for BingX error mapping."""
    
    def test_auth_error(self):
        """Signature and key errors are authentication failures."""
        for code in (100001, 100413, 100419):
            info = map_bingx_error(code, "auth failed")
            
            assert info.category == ErrorCategory.AUTHENTICATION
            assert info.retry_eligible == RetryEligibility.NO_RETRY
            assert isinstance(to_exception(info), AuthenticationError)
    
    def test_rate_limit_error(self):
        """Throttling backs off."""
        info = map_bingx_error(100410, "Too many requests")
        
        assert info.category == ErrorCategory.RATE_LIMIT
        assert info.retry_eligible == RetryEligibility.BACKOFF
        assert isinstance(to_exception(info), RateLimitedError)
    
    def test_insufficient_margin(self):
        """Margin errors are logical rejections, never retried."""
        info = map_bingx_error(101204, "Insufficient margin")
        error = to_exception(info)
        
        assert info.category == ErrorCategory.INSUFFICIENT_MARGIN
        assert isinstance(error, OrderRejectedError)
        assert error.is_retryable is False
        assert error.reason == "INSUFFICIENT_MARGIN"
    
    def test_order_state_errors(self):
        """Not found and already terminal map to their own exceptions."""
        assert isinstance(to_exception(map_bingx_error(80016, "not exist")), OrderNotFoundError)
        assert isinstance(to_exception(map_bingx_error(80018, "filled")), OrderAlreadyTerminalError)
    
    def test_transient_server_error(self):
        """Server side failures are retryable network errors."""
        error = to_exception(map_bingx_error(80001, "service unavailable"))
        
        assert isinstance(error, NetworkError)
        assert error.is_retryable
    
    def test_unknown_code_uses_http_status(self):
        """Unknown codes fall back to the HTTP status."""
        assert map_bingx_error(999, "x", http_status=429).category == ErrorCategory.RATE_LIMIT
        assert map_bingx_error(999, "x", http_status=403).category == ErrorCategory.AUTHENTICATION
        assert map_bingx_error(999, "x", http_status=502).category == ErrorCategory.NETWORK
    
    def test_unknown_code_not_retried(self):
        """Unclassified errors are rejections."""
        info = map_bingx_error(123456, "weird", http_status=200)
        
        assert info.category == ErrorCategory.UNKNOWN
        assert not info.is_retryable()
        assert info.code == "BINGX_123456"
        assert isinstance(to_exception(info), OrderRejectedError)


class TestErrorHelpers:
    """Tests for error helper functions."""
    
    def test_create_network_error(self):
        error = create_network_error("Connection refused", "submit_order")
        
        assert isinstance(error, NetworkError)
        assert error.info.category == ErrorCategory.NETWORK
        assert error.info.operation == "submit_order"
        assert error.is_retryable
    
    def test_create_timeout_error(self):
        error = create_timeout_error(30.0)
        
        assert error.info.category == ErrorCategory.TIMEOUT
        assert "30" in error.info.message
    
    def test_local_rate_limit_not_retryable(self):
        """A local limiter timeout is final for the caller."""
        error = create_rate_limit_error("waited too long")
        
        assert isinstance(error, RateLimitedError)
        assert not error.is_retryable


# ============================================================
# LOGGING TESTS
# ============================================================

class TestCredentialMasking:
    """Tests for credential masking."""
    
    def test_mask_value(self):
        """Test masking sensitive value."""
        masked = mask_value("abc123def456ghi789", show_chars=4)
        
        assert masked == "abc1...***"
        assert "def456" not in masked
    
    def test_mask_short_value(self):
        assert mask_value("abc", show_chars=4) == "***"
    
    def test_mask_headers(self):
        """The API key header is masked, others are kept."""
        masked = mask_headers({
            "Content-Type": "application/json",
            "X-BX-APIKEY": "secret_api_key_12345",
        })
        
        assert masked["Content-Type"] == "application/json"
        assert "secret_api_key" not in masked["X-BX-APIKEY"]
    
    def test_mask_params(self):
        """Signatures and embedded HMAC digests are masked."""
        digest = "a" * 64
        masked = mask_params({
            "symbol": "BTC-USDT",
            "signature": digest,
            "note": f"signed with {digest}",
            "quantity": "1.5",
        })
        
        assert masked["symbol"] == "BTC-USDT"
        assert masked["quantity"] == "1.5"
        assert digest not in str(masked["signature"])
        assert digest not in masked["note"]
    
    def test_mask_url(self):
        url = "https://open-api.bingx.com/openApi/swap/v2/trade/order?symbol=BTC-USDT&signature=deadbeef"
        
        masked = mask_url(url)
        
        assert "deadbeef" not in masked
        assert "symbol=BTC-USDT" in masked


# ============================================================
# RATE LIMITER TESTS
# ============================================================

class TestTokenBucket:
    """Tests for the token bucket."""
    
    @pytest.mark.asyncio
    async def test_burst_within_capacity(self):
        """Capacity is available immediately."""
        fake = FakeTime()
        bucket = TokenBucket(3, 1.0, monotonic=fake.monotonic, sleep=fake.sleep)
        
        for _ in range(3):
            await bucket.acquire()
        
        assert fake.sleeps == []
        assert bucket.available == pytest.approx(0.0)
    
    @pytest.mark.asyncio
    async def test_waits_for_refill(self):
        """An empty bucket waits for exactly the missing tokens."""
        fake = FakeTime()
        bucket = TokenBucket(2, 4.0, monotonic=fake.monotonic, sleep=fake.sleep)
        await bucket.acquire(2)
        
        await bucket.acquire(1)
        
        assert fake.sleeps == [pytest.approx(0.25)]
    
    @pytest.mark.asyncio
    async def test_timeout_raises_rate_limited(self):
        """A wait beyond the caller's timeout fails fast."""
        fake = FakeTime()
        bucket = TokenBucket(1, 0.1, monotonic=fake.monotonic, sleep=fake.sleep)
        await bucket.acquire()
        
        with pytest.raises(RateLimitedError) as exc_info:
            await bucket.acquire(1, timeout=1.0)
        
        assert not exc_info.value.is_retryable
        assert fake.sleeps == []
    
    @pytest.mark.asyncio
    async def test_request_above_capacity_rejected(self):
        bucket = TokenBucket(2, 1.0)
        
        with pytest.raises(ValueError):
            await bucket.acquire(3)
    
    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            TokenBucket(0, 1.0)


# ============================================================
# RETRY TESTS
# ============================================================

class TestRetryPolicy:
    """Tests for bounded retries."""
    
    @staticmethod
    def _policy(fake: FakeTime, attempts: int = 3) -> RetryPolicy:
        config = RetryConfig(
            max_attempts=attempts,
            initial_delay_seconds=0.1,
            backoff_multiplier=2.0,
            max_delay_seconds=10.0,
            jitter_ratio=0.0,
        )
        return RetryPolicy(config, sleep=fake.sleep)
    
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failure(self):
        fake = FakeTime()
        calls = []
        
        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise create_network_error("reset")
            return "ok"
        
        assert await self._policy(fake).run("op", flaky) == "ok"
        assert len(calls) == 2
        assert fake.sleeps == [pytest.approx(0.1)]
    
    @pytest.mark.asyncio
    async def test_exhaustion_surfaces_last_error(self):
        """Transient errors are retried up to max_attempts, then raised."""
        fake = FakeTime()
        calls = []
        
        async def always_down():
            calls.append(1)
            raise create_network_error("down")
        
        with pytest.raises(NetworkError):
            await self._policy(fake).run("op", always_down)
        
        assert len(calls) == 3
        assert fake.sleeps == [pytest.approx(0.1), pytest.approx(0.2)]
    
    @pytest.mark.asyncio
    async def test_auth_not_retried(self):
        fake = FakeTime()
        calls = []
        
        async def bad_key():
            calls.append(1)
            raise to_exception(map_bingx_error(100413, "Incorrect apiKey"))
        
        with pytest.raises(AuthenticationError):
            await self._policy(fake).run("op", bad_key)
        
        assert len(calls) == 1
        assert fake.sleeps == []
    
    @pytest.mark.asyncio
    async def test_logical_rejection_not_retried(self):
        fake = FakeTime()
        calls = []
        
        async def rejected():
            calls.append(1)
            raise to_exception(map_bingx_error(101204, "Insufficient margin"))
        
        with pytest.raises(OrderRejectedError):
            await self._policy(fake).run("op", rejected)
        
        assert len(calls) == 1
    
    def test_delay_capped_with_bounded_jitter(self):
        config = RetryConfig(
            initial_delay_seconds=1.0,
            backoff_multiplier=2.0,
            max_delay_seconds=5.0,
            jitter_ratio=0.2,
            seed=42,
        )
        policy = RetryPolicy(config)
        
        assert 1.0 <= policy.delay_for(0) <= 1.2
        assert 5.0 <= policy.delay_for(10) <= 6.0


# ============================================================
# BINGX ADAPTER TESTS
# ============================================================

def _response(payload, status: int = 200) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    return response


def _session(*responses) -> MagicMock:
    session = MagicMock()
    contexts = []
    for response in responses:
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=False)
        contexts.append(context)
    session.request = MagicMock(side_effect=contexts)
    session.close = AsyncMock()
    return session


@pytest.fixture
def bingx_adapter():
    context = TradingContext(
        credential=Credential(api_key="test-api-key-123", api_secret="test-secret-456"),
        clock=MockClock(T0),
    )
    return BingXAdapter(context, ExecutionEngineConfig.for_testing())


class TestBingXAdapter:
    """Tests for the BingX request pipeline."""
    
    @pytest.mark.asyncio
    async def test_signed_request(self, bingx_adapter):
        """Private calls carry timestamp, recvWindow, signature and API key header."""
        bingx_adapter._session = _session(_response({
            "code": 0,
            "data": {"order": {"orderId": 1234567890, "status": "NEW"}},
        }))
        
        response = await bingx_adapter.submit_order(SubmitOrderRequest(
            symbol="BTC-USDT",
            side=OrderSide.BUY,
            order_type=OrderType.MARKET,
            quantity=Decimal("0.001"),
            client_order_id="BOT_abc",
        ))
        
        assert response.exchange_order_id == "1234567890"
        assert response.status == OrderState.SUBMITTED
        
        args, kwargs = bingx_adapter._session.request.call_args
        assert args[0] == "POST"
        assert args[1].endswith("/openApi/swap/v2/trade/order")
        params = kwargs["params"]
        assert params["clientOrderID"] == "BOT_abc"
        assert params["positionSide"] == "BOTH"
        assert params["timestamp"] == str(int(T0.timestamp() * 1000))
        assert len(params["signature"]) == 64
        assert kwargs["headers"] == {API_KEY_HEADER: "test-api-key-123"}
    
    @pytest.mark.asyncio
    async def test_entry_brackets_sent_as_json(self, bingx_adapter):
        bingx_adapter._session = _session(_response({
            "code": 0,
            "data": {"order": {"orderId": 1, "status": "NEW"}},
        }))
        
        await bingx_adapter.submit_order(SubmitOrderRequest(
            symbol="BTC-USDT",
            side=OrderSide.BUY,
            order_type=OrderType.MARKET,
            quantity=Decimal("0.001"),
            client_order_id="BOT_tpsl",
            take_profit_price=Decimal("55000.0"),
            stop_loss_price=Decimal("47500.0"),
        ))
        
        params = bingx_adapter._session.request.call_args[1]["params"]
        assert json.loads(params["takeProfit"]) == {
            "type": "TAKE_PROFIT_MARKET",
            "stopPrice": 55000.0,
            "workingType": "MARK_PRICE",
            "closePosition": True,
        }
        assert json.loads(params["stopLoss"])["type"] == "STOP_MARKET"
        assert json.loads(params["stopLoss"])["stopPrice"] == 47500.0
    
    @pytest.mark.asyncio
    async def test_open_orders_skip_brackets(self, bingx_adapter):
        bingx_adapter._session = _session(_response({"code": 0, "data": {"orders": [
            {"symbol": "BTC-USDT", "side": "BUY", "type": "LIMIT", "orderId": 1,
             "origQty": "0.001", "price": "40000", "status": "NEW"},
            {"symbol": "BTC-USDT", "side": "SELL", "type": "STOP_MARKET", "orderId": 2,
             "origQty": "0", "stopPrice": "47500", "status": "NEW"},
            {"symbol": "BTC-USDT", "side": "SELL", "type": "TAKE_PROFIT_MARKET", "orderId": 3,
             "origQty": "0", "stopPrice": "55000", "status": "NEW"},
        ]}}))
        
        orders = await bingx_adapter.get_open_orders("BTC-USDT")
        
        assert [o.exchange_order_id for o in orders] == ["1"]
    
    @pytest.mark.asyncio
    async def test_set_leverage(self, bingx_adapter):
        bingx_adapter._session = _session(_response({"code": 0, "data": {"leverage": 20}}))
        
        await bingx_adapter.set_leverage("ETH-USDT", 20)
        
        args, kwargs = bingx_adapter._session.request.call_args
        assert args[0] == "POST"
        assert args[1].endswith("/openApi/swap/v2/trade/leverage")
        assert kwargs["params"]["side"] == "BOTH"
        assert str(kwargs["params"]["leverage"]) == "20"
    
    @pytest.mark.asyncio
    async def test_demo_uses_vst_host(self):
        context = TradingContext(
            credential=Credential(api_key="k" * 12, api_secret="s" * 12),
            clock=MockClock(T0),
            demo=True,
        )
        adapter = BingXAdapter(context, ExecutionEngineConfig.for_testing())
        adapter._session = _session(_response({"code": 0, "data": {"price": "42000.5"}}))
        
        price = await adapter.get_current_price("BTC-USDT")
        
        assert price == Decimal("42000.5")
        url = adapter._session.request.call_args[0][1]
        assert url.startswith("https://open-api-vst.bingx.com")
    
    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self, bingx_adapter):
        bingx_adapter._session = _session(
            _response({"code": 100413, "msg": "Incorrect apiKey"}),
        )
        
        with pytest.raises(AuthenticationError):
            await bingx_adapter.get_open_orders()
        
        assert bingx_adapter._session.request.call_count == 1
    
    @pytest.mark.asyncio
    async def test_transient_error_retried(self, bingx_adapter):
        """A transient code is retried and the next success returned."""
        bingx_adapter._session = _session(
            _response({"code": 80001, "msg": "service busy"}),
            _response({"code": 0, "data": {"orders": []}}),
        )
        
        orders = await bingx_adapter.get_open_orders("BTC-USDT")
        
        assert orders == []
        assert bingx_adapter._session.request.call_count == 2
    
    @pytest.mark.asyncio
    async def test_connection_errors_exhaust_retries(self, bingx_adapter):
        session = MagicMock()
        session.request = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        bingx_adapter._session = session
        
        with pytest.raises(NetworkError):
            await bingx_adapter.get_open_orders()
        
        assert session.request.call_count == 3
    
    @pytest.mark.asyncio
    async def test_unparseable_body(self, bingx_adapter):
        bingx_adapter._session = _session(_response(None, status=400))
        
        with pytest.raises(OrderRejectedError):
            await bingx_adapter.get_current_price("BTC-USDT")
    
    @pytest.mark.asyncio
    async def test_query_unknown_order(self, bingx_adapter):
        """Order-not-found becomes found=False rather than an exception."""
        bingx_adapter._session = _session(_response({"code": 80016, "msg": "order not exist"}))
        
        response = await bingx_adapter.query_order(QueryOrderRequest(
            symbol="BTC-USDT", client_order_id="BOT_missing",
        ))
        
        assert response.found is False
        params = bingx_adapter._session.request.call_args[1]["params"]
        assert params["clientOrderID"] == "BOT_missing"
    
    @pytest.mark.asyncio
    async def test_query_parses_order(self, bingx_adapter):
        bingx_adapter._session = _session(_response({
            "code": 0,
            "data": {"order": {
                "symbol": "ETH-USDT",
                "orderId": 99,
                "clientOrderId": "BOT_x",
                "side": "SELL",
                "type": "LIMIT",
                "status": "PARTIALLY_FILLED",
                "origQty": "0.5",
                "executedQty": "0.2",
                "price": "2000",
                "avgPrice": "2001.5",
                "commission": "-0.2",
            }},
        }))
        
        response = await bingx_adapter.query_order(QueryOrderRequest(
            symbol="ETH-USDT", exchange_order_id="99",
        ))
        
        order = response.order
        assert order.status == OrderState.PARTIALLY_FILLED
        assert order.side == OrderSide.SELL
        assert order.order_type == OrderType.LIMIT
        assert order.executed_quantity == Decimal("0.2")
        assert order.average_price == Decimal("2001.5")
        assert order.fee == Decimal("0.2")
    
    @pytest.mark.asyncio
    async def test_account_snapshot_nets_short_legs(self, bingx_adapter):
        """SHORT positions are negative; the snapshot bundles open orders."""
        bingx_adapter._session = _session(
            _response({"code": 0, "data": {"balance": {
                "asset": "USDT",
                "availableMargin": "900",
                "usedMargin": "100",
                "freezedMargin": "0",
                "equity": "1005",
            }}}),
            _response({"code": 0, "data": [
                {"symbol": "BTC-USDT", "positionSide": "SHORT", "positionAmt": "0.01", "avgPrice": "50000"},
                {"symbol": "ETH-USDT", "positionSide": "BOTH", "positionAmt": "0", "avgPrice": "0"},
            ]}),
            _response({"code": 0, "data": {"orders": []}}),
        )
        
        snapshot = await bingx_adapter.fetch_account_snapshot()
        
        balance = snapshot.get_balance("USDT")
        assert balance.free == Decimal("900")
        assert balance.total == Decimal("1005")
        assert snapshot.positions["BTC-USDT"].quantity == Decimal("-0.01")
        assert "ETH-USDT" not in snapshot.positions
        assert snapshot.fetched_at == T0
    
    @pytest.mark.asyncio
    async def test_not_connected(self, bingx_adapter):
        with pytest.raises(NetworkError):
            await bingx_adapter.get_current_price("BTC-USDT")


# ============================================================
# MOCK ADAPTER TESTS
# ============================================================

class TestMockAdapter:
    """Tests for MockExchangeAdapter."""
    
    @pytest.mark.asyncio
    async def test_connect_disconnect(self):
        adapter = MockExchangeAdapter()
        
        assert not adapter.is_connected
        await adapter.connect()
        assert adapter.is_connected
        await adapter.disconnect()
        assert not adapter.is_connected
    
    @pytest.mark.asyncio
    async def test_market_order_fills_immediately(self):
        adapter = MockExchangeAdapter(MockConfig(default_price=Decimal("100")))
        
        response = await adapter.submit_order(SubmitOrderRequest(
            symbol="BTC-USDT",
            side=OrderSide.BUY,
            order_type=OrderType.MARKET,
            quantity=Decimal("2"),
            client_order_id="BOT_1",
        ))
        
        order = adapter.get_order("BOT_1")
        assert order.order_id == response.exchange_order_id
        assert order.status == OrderState.FILLED
        snapshot = await adapter.fetch_account_snapshot()
        assert snapshot.positions["BTC-USDT"].quantity == Decimal("2")
    
    @pytest.mark.asyncio
    async def test_duplicate_client_order_id_rejected(self):
        adapter = MockExchangeAdapter()
        request = SubmitOrderRequest(
            symbol="BTC-USDT",
            side=OrderSide.BUY,
            order_type=OrderType.MARKET,
            quantity=Decimal("0.01"),
            client_order_id="BOT_dup",
        )
        await adapter.submit_order(request)
        
        with pytest.raises(OrderRejectedError):
            await adapter.submit_order(request)
        assert len(adapter.orders) == 1
    
    @pytest.mark.asyncio
    async def test_lost_response_creates_order(self):
        """after_accept failures leave the order on the exchange."""
        adapter = MockExchangeAdapter()
        adapter.fail_next("submit_order", after_accept=True)
        
        with pytest.raises(NetworkError):
            await adapter.submit_order(SubmitOrderRequest(
                symbol="BTC-USDT",
                side=OrderSide.BUY,
                order_type=OrderType.MARKET,
                quantity=Decimal("0.01"),
                client_order_id="BOT_lost",
            ))
        
        assert adapter.get_order("BOT_lost") is not None
    
    @pytest.mark.asyncio
    async def test_leverage_sets_margin(self):
        adapter = MockExchangeAdapter(MockConfig(default_price=Decimal("100")))
        adapter.set_position("BTC-USDT", Decimal("2"), Decimal("100"))
        
        await adapter.set_leverage("BTC-USDT", 10)
        snapshot = await adapter.fetch_account_snapshot()
        
        assert snapshot.get_balance("USDT").locked == Decimal("20")
        assert snapshot.get_balance("USDT").free == Decimal("980")
    
    @pytest.mark.asyncio
    async def test_cancel_all_orders_clears_brackets(self):
        adapter = MockExchangeAdapter(MockConfig(default_price=Decimal("100")))
        await adapter.submit_order(SubmitOrderRequest(
            symbol="BTC-USDT",
            side=OrderSide.BUY,
            order_type=OrderType.MARKET,
            quantity=Decimal("1"),
            client_order_id="BOT_1",
            take_profit_price=Decimal("110"),
            stop_loss_price=Decimal("95"),
        ))
        resting = adapter.add_open_order("BTC-USDT", OrderSide.BUY, Decimal("1"), Decimal("90"))
        assert adapter.brackets["BTC-USDT"] == (Decimal("110"), Decimal("95"))
        
        await adapter.cancel_all_orders("BTC-USDT")
        
        assert "BTC-USDT" not in adapter.brackets
        assert resting.status == OrderState.CANCELLED
        assert await adapter.get_open_orders("BTC-USDT") == []
    
    @pytest.mark.asyncio
    async def test_cancel_terminal_order(self):
        adapter = MockExchangeAdapter()
        adapter.add_open_order("BTC-USDT", OrderSide.BUY, Decimal("1"), Decimal("10"), "BOT_open")
        adapter.fill_order("BOT_open", Decimal("1"))
        
        with pytest.raises(OrderAlreadyTerminalError):
            await adapter.cancel_order(CancelOrderRequest(symbol="BTC-USDT", client_order_id="BOT_open"))
    
    @pytest.mark.asyncio
    async def test_stream_push_and_disconnect(self):
        adapter = MockExchangeAdapter()
        tick = Tick("BTC-USDT", T0, Decimal("100"), Decimal("101"), Decimal("100.5"))
        received = []
        
        stream = adapter.stream_market_data(["BTC-USDT"])
        task = asyncio.ensure_future(stream.__anext__())
        await adapter.wait_for_streams(1)
        adapter.push_tick(tick)
        received.append(await task)
        
        adapter.disconnect_stream()
        with pytest.raises(StreamDisconnectedError):
            await stream.__anext__()
        
        assert received == [tick]
        assert adapter.stream_subscriptions == 1


# ============================================================
# RUN TESTS
# ============================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v"])
