"""
Execution Engine - BingX Perpetual Swap Adapter.

============================================================
PURPOSE
============================================================
Production adapter for the BingX USDT-M perpetual swap API.

SAFETY FEATURES:
- Token bucket rate limiting before every request
- HMAC-SHA256 request signing (pluggable signer)
- Bounded retries for transient failures only
- Error mapping in adapters.errors
- Credentials masked in every log line

============================================================
ENDPOINTS
============================================================
POST   /openApi/swap/v2/trade/order        submit
DELETE /openApi/swap/v2/trade/order        cancel
DELETE /openApi/swap/v2/trade/allOpenOrders cancel every open order of a symbol
GET    /openApi/swap/v2/trade/order        query
GET    /openApi/swap/v2/trade/openOrders   open orders
POST   /openApi/swap/v2/trade/leverage     leverage
GET    /openApi/swap/v2/user/balance       balance
GET    /openApi/swap/v2/user/positions     positions
GET    /openApi/swap/v2/quote/contracts    symbol rules
GET    /openApi/swap/v1/ticker/price       last price
GET    /openApi/swap/v2/server/time        connectivity check

============================================================
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiohttp

from core.credentials import TradingContext
from market_data.types import Tick

from ..config import ExecutionEngineConfig
from ..types import (
    AccountBalance,
    AccountSnapshot,
    ExchangeOrder,
    ExchangePosition,
    OrderSide,
    OrderType,
    SymbolRules,
)
from .base import (
    CancelOrderRequest,
    CancelOrderResponse,
    ExchangeAdapter,
    QueryOrderRequest,
    QueryOrderResponse,
    SubmitOrderRequest,
    SubmitOrderResponse,
    map_exchange_status_to_order_state,
)
from .errors import (
    ExchangeException,
    OrderNotFoundError,
    create_network_error,
    create_timeout_error,
    map_bingx_error,
    to_exception,
)
from .logging_utils import AdapterLogger
from .rate_limiter import TokenBucket
from .retry import RetryPolicy
from .signing import HmacSha256Signer, RequestSigner
from .websocket import BingXMarketStream, WebSocketConfig


logger = logging.getLogger(__name__)

# Conditional orders that close the position; never adopted as tracked orders
BRACKET_ORDER_TYPES = frozenset({"STOP_MARKET", "TAKE_PROFIT_MARKET", "STOP", "TAKE_PROFIT"})


def _decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


def _millis_to_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def parse_order(raw: Dict[str, Any]) -> ExchangeOrder:
    """Normalize a BingX order payload."""
    order_type = raw.get("type", "MARKET")
    price = _decimal(raw.get("price"))
    avg_price = _decimal(raw.get("avgPrice"))
    return ExchangeOrder(
        symbol=raw["symbol"],
        side=OrderSide(raw["side"]),
        status=map_exchange_status_to_order_state(raw.get("status", "NEW")),
        quantity=_decimal(raw.get("origQty") or raw.get("quantity")),
        exchange_order_id=str(raw["orderId"]) if raw.get("orderId") is not None else None,
        client_order_id=raw.get("clientOrderId") or raw.get("clientOrderID") or None,
        order_type=OrderType.LIMIT if order_type == "LIMIT" else OrderType.MARKET,
        price=price if price > 0 else None,
        executed_quantity=_decimal(raw.get("executedQty")),
        average_price=avg_price if avg_price > 0 else None,
        fee=abs(_decimal(raw.get("commission"))),
        reduce_only=str(raw.get("reduceOnly", "false")).lower() == "true",
        updated_at=_millis_to_datetime(raw.get("updateTime") or raw.get("time")),
    )


def bracket_param(order_type: str, trigger_price: Decimal) -> str:
    """JSON-encoded trigger order closing the whole position at ``trigger_price``."""
    return json.dumps({
        "type": order_type,
        "stopPrice": float(trigger_price),
        "workingType": "MARK_PRICE",
        "closePosition": True,
    })


def parse_position(raw: Dict[str, Any]) -> ExchangePosition:
    """Normalize a BingX position; SHORT positions become negative."""
    amount = _decimal(raw.get("positionAmt"))
    if raw.get("positionSide") == "SHORT" and amount > 0:
        amount = -amount
    mark = raw.get("markPrice")
    return ExchangePosition(
        symbol=raw["symbol"],
        quantity=amount,
        entry_price=_decimal(raw.get("avgPrice")),
        unrealized_pnl=_decimal(raw.get("unrealizedProfit")),
        mark_price=_decimal(mark) if mark else None,
        leverage=int(raw.get("leverage") or 1),
    )


def parse_contract(raw: Dict[str, Any]) -> SymbolRules:
    symbol = raw["symbol"]
    base, _, quote = symbol.partition("-")
    return SymbolRules(
        symbol=symbol,
        base_asset=raw.get("asset") or base,
        quote_asset=raw.get("currency") or quote or "USDT",
        min_quantity=_decimal(raw.get("tradeMinQuantity") or raw.get("size")),
        quantity_precision=int(raw.get("quantityPrecision", 8)),
        price_precision=int(raw.get("pricePrecision", 8)),
        min_notional=_decimal(raw.get("tradeMinUSDT")),
    )


# ============================================================
# BINGX ADAPTER
# ============================================================

class BingXAdapter(ExchangeAdapter):
    """
    BingX perpetual swap adapter.
    
    Credentials arrive through the TradingContext; nothing is read
    from the environment here.
    """
    
    def __init__(
        self,
        context: TradingContext,
        config: Optional[ExecutionEngineConfig] = None,
        signer: Optional[RequestSigner] = None,
        rate_limiter: Optional[TokenBucket] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._context = context
        self._clock = context.clock
        self._config = config or ExecutionEngineConfig()
        
        exchange = self._config.exchange
        self._rest_url = exchange.demo_rest_url if context.demo else exchange.rest_url
        self._recv_window = exchange.recv_window_ms
        
        self._signer = signer or HmacSha256Signer(context.credential)
        self._limiter = rate_limiter or TokenBucket.from_config(self._config.rate_limit)
        self._retry = retry_policy or RetryPolicy(self._config.retry)
        self._log = AdapterLogger(self.exchange_id, logger_name=__name__)
        
        self._session: Optional[aiohttp.ClientSession] = None
        self._connected = False
        
        self._market_stream = BingXMarketStream(
            session_factory=self._require_session,
            config=WebSocketConfig(url=exchange.ws_url, subscribe_depth=exchange.stream_depth),
            clock=self._clock,
        )
    
    @property
    def exchange_id(self) -> str:
        return self._config.exchange.exchange_id
    
    @property
    def is_connected(self) -> bool:
        return self._connected and self._session is not None
    
    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------
    
    async def connect(self) -> None:
        """Open the HTTP session and check connectivity."""
        if self._session is not None:
            await self.disconnect()
        
        timeout = aiohttp.ClientTimeout(
            connect=self._config.timeout.connection_timeout_seconds,
            total=self._config.timeout.request_timeout_seconds,
        )
        self._session = aiohttp.ClientSession(timeout=timeout)
        
        try:
            await self._request("GET", "/openApi/swap/v2/server/time", operation="connect")
        except ExchangeException:
            await self.disconnect()
            raise
        
        self._connected = True
        logger.info(
            f"Connected to BingX swap ({'demo' if self._context.demo else 'live'}) "
            f"as {self._context.credential.masked_key}"
        )
    
    async def disconnect(self) -> None:
        self._connected = False
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Disconnected from BingX swap")
    
    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise create_network_error("Adapter is not connected")
        return self._session
    
    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------
    
    async def submit_order(self, request: SubmitOrderRequest) -> SubmitOrderResponse:
        params: Dict[str, Any] = {
            "symbol": request.symbol,
            "side": request.side.value,
            "positionSide": "BOTH",
            "type": request.order_type.value,
            "quantity": str(request.quantity),
            "clientOrderID": request.client_order_id,
        }
        if request.order_type == OrderType.LIMIT:
            params["price"] = str(request.price)
            params["timeInForce"] = "GTC"
        if request.reduce_only:
            params["reduceOnly"] = "true"
        if request.take_profit_price is not None:
            params["takeProfit"] = bracket_param("TAKE_PROFIT_MARKET", request.take_profit_price)
        if request.stop_loss_price is not None:
            params["stopLoss"] = bracket_param("STOP_MARKET", request.stop_loss_price)
        
        data = await self._request(
            "POST", "/openApi/swap/v2/trade/order",
            params=params, signed=True, operation="submit_order",
            weight=self._config.rate_limit.order_weight,
        )
        order = data.get("order", data)
        
        return SubmitOrderResponse(
            exchange_order_id=str(order["orderId"]),
            client_order_id=request.client_order_id,
            status=map_exchange_status_to_order_state(order.get("status", "NEW")),
        )
    
    async def cancel_order(self, request: CancelOrderRequest) -> CancelOrderResponse:
        params = self._order_ref(request.symbol, request.exchange_order_id, request.client_order_id)
        data = await self._request(
            "DELETE", "/openApi/swap/v2/trade/order",
            params=params, signed=True, operation="cancel_order",
            weight=self._config.rate_limit.order_weight,
        )
        order = data.get("order", data) if isinstance(data, dict) else {}
        return CancelOrderResponse(
            exchange_order_id=str(order.get("orderId", request.exchange_order_id)),
            status=map_exchange_status_to_order_state(order.get("status", "CANCELLED")),
        )
    
    async def query_order(self, request: QueryOrderRequest) -> QueryOrderResponse:
        params = self._order_ref(request.symbol, request.exchange_order_id, request.client_order_id)
        try:
            data = await self._request(
                "GET", "/openApi/swap/v2/trade/order",
                params=params, signed=True, operation="query_order",
            )
        except OrderNotFoundError:
            return QueryOrderResponse(found=False)
        
        return QueryOrderResponse(found=True, order=parse_order(data.get("order", data)))
    
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[ExchangeOrder]:
        params = {"symbol": symbol} if symbol else {}
        data = await self._request(
            "GET", "/openApi/swap/v2/trade/openOrders",
            params=params, signed=True, operation="get_open_orders",
        )
        return [
            parse_order(raw)
            for raw in (data or {}).get("orders", [])
            if raw.get("type") not in BRACKET_ORDER_TYPES
        ]
    
    async def cancel_all_orders(self, symbol: str) -> None:
        await self._request(
            "DELETE", "/openApi/swap/v2/trade/allOpenOrders",
            params={"symbol": symbol}, signed=True, operation="cancel_all_orders",
            weight=self._config.rate_limit.order_weight,
        )
        logger.info(f"Cancelled open orders for {symbol}")
    
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._request(
            "POST", "/openApi/swap/v2/trade/leverage",
            params={"symbol": symbol, "side": "BOTH", "leverage": leverage},
            signed=True, operation="set_leverage",
        )
        logger.info(f"Leverage for {symbol} set to {leverage}x")
    
    @staticmethod
    def _order_ref(
        symbol: str,
        exchange_order_id: Optional[str],
        client_order_id: Optional[str],
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"symbol": symbol}
        if exchange_order_id:
            params["orderId"] = exchange_order_id
        elif client_order_id:
            params["clientOrderID"] = client_order_id
        else:
            raise ValueError("exchange_order_id or client_order_id is required")
        return params
    
    # --------------------------------------------------------
    # ACCOUNT AND MARKET
    # --------------------------------------------------------
    
    async def fetch_account_snapshot(self) -> AccountSnapshot:
        balance_data = await self._request(
            "GET", "/openApi/swap/v2/user/balance", signed=True, operation="balance",
        )
        positions_data = await self._request(
            "GET", "/openApi/swap/v2/user/positions", signed=True, operation="positions",
        )
        open_orders = await self.get_open_orders()
        
        raw_balance = balance_data.get("balance", balance_data)
        asset = raw_balance.get("asset", "USDT")
        balances = {
            asset: AccountBalance(
                asset=asset,
                free=_decimal(raw_balance.get("availableMargin")),
                locked=_decimal(raw_balance.get("usedMargin")) + _decimal(raw_balance.get("freezedMargin")),
                equity=_decimal(raw_balance.get("equity")),
            ),
        }
        
        positions: Dict[str, ExchangePosition] = {}
        for raw in positions_data or []:
            position = parse_position(raw)
            if position.quantity == 0:
                continue
            if position.symbol in positions:
                # Hedge-mode accounts report LONG and SHORT legs separately.
                existing = positions[position.symbol]
                position = ExchangePosition(
                    symbol=position.symbol,
                    quantity=existing.quantity + position.quantity,
                    entry_price=existing.entry_price,
                    unrealized_pnl=existing.unrealized_pnl + position.unrealized_pnl,
                    mark_price=position.mark_price or existing.mark_price,
                    leverage=position.leverage,
                )
            positions[position.symbol] = position
        
        return AccountSnapshot(
            fetched_at=self._clock.now(),
            balances=balances,
            positions=positions,
            open_orders=open_orders,
        )
    
    async def get_symbol_rules(self) -> Dict[str, SymbolRules]:
        data = await self._request("GET", "/openApi/swap/v2/quote/contracts", operation="contracts")
        rules = {}
        for raw in data or []:
            rule = parse_contract(raw)
            rules[rule.symbol] = rule
        logger.info(f"Loaded {len(rules)} BingX contract rules")
        return rules
    
    async def get_current_price(self, symbol: str) -> Decimal:
        data = await self._request(
            "GET", "/openApi/swap/v1/ticker/price",
            params={"symbol": symbol}, operation="ticker_price",
        )
        return _decimal(data["price"])
    
    def stream_market_data(self, symbols: Sequence[str]) -> AsyncIterator[Tick]:
        return self._market_stream.ticks(list(symbols))
    
    # --------------------------------------------------------
    # REQUEST PIPELINE
    # --------------------------------------------------------
    
    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        operation: str = "request",
        weight: Optional[float] = None,
    ) -> Any:
        """Rate limited, signed and retried request returning ``data``."""
        weight = weight if weight is not None else self._config.rate_limit.query_weight
        
        async def attempt() -> Any:
            await self._limiter.acquire(weight, timeout=self._config.rate_limit.acquire_timeout_seconds)
            return await self._send(method, path, dict(params or {}), signed, operation)
        
        return await self._retry.run(operation, attempt)
    
    async def _send(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        signed: bool,
        operation: str,
    ) -> Any:
        """One HTTP round trip. Raises typed ExchangeExceptions."""
        session = self._require_session()
        headers: Dict[str, str] = {}
        
        if signed:
            params["timestamp"] = self._clock.timestamp_ms()
            params["recvWindow"] = self._recv_window
            params = self._signer.sign(params)
            headers.update(self._signer.headers())
        
        query = {k: str(v) for k, v in params.items()}
        url = f"{self._rest_url}{path}"
        request_id = self._log.log_request(operation, method, path, params=query, headers=headers)
        started = time.monotonic()
        status: Optional[int] = None
        
        try:
            async with session.request(method, url, params=query, headers=headers) as response:
                status = response.status
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None
        except aiohttp.ClientError as e:
            self._log.log_response(operation, request_id, status, self._elapsed_ms(started), str(e))
            raise create_network_error(f"Network error: {e}", operation) from e
        except asyncio.TimeoutError as e:
            self._log.log_response(operation, request_id, status, self._elapsed_ms(started), "timeout")
            raise create_timeout_error(self._config.timeout.request_timeout_seconds, operation) from e
        
        if not isinstance(payload, dict):
            info = map_bingx_error(-1, f"Unparseable response (HTTP {status})", status, operation)
            self._log.log_response(operation, request_id, status, self._elapsed_ms(started), info.message)
            raise to_exception(info)
        
        code = int(payload.get("code", 0) or 0)
        if status != 200 or code != 0:
            info = map_bingx_error(code, str(payload.get("msg", "")), status, operation)
            self._log.log_response(operation, request_id, status, self._elapsed_ms(started), str(info))
            raise to_exception(info)
        
        self._log.log_response(operation, request_id, status, self._elapsed_ms(started))
        return payload.get("data")
    
    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.monotonic() - started) * 1000
