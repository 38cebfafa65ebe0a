"""
Execution Engine - Adapters Package.

============================================================
PURPOSE
============================================================
Exchange API client.

AVAILABLE ADAPTERS:
- BingXAdapter: BingX USDT-M perpetual swap (REST + WebSocket)
- MockExchangeAdapter: In-memory, for tests

UTILITIES:
- RequestSigner / HmacSha256Signer: Request signing
- TokenBucket: Client-side rate limiting
- RetryPolicy: Bounded exponential backoff with jitter
- AdapterLogger: Secure logging

ERROR HANDLING:
- ExchangeErrorInfo: Unified error representation
- Typed exceptions: NetworkError, RateLimitedError, AuthenticationError,
  OrderRejectedError, OrderNotFoundError, OrderAlreadyTerminalError,
  StreamDisconnectedError
- map_bingx_error: BingX code mapping

============================================================
"""

from .base import (
    ExchangeAdapter,
    SubmitOrderRequest,
    SubmitOrderResponse,
    QueryOrderRequest,
    QueryOrderResponse,
    CancelOrderRequest,
    CancelOrderResponse,
    map_exchange_status_to_order_state,
)
from .bingx import BingXAdapter
from .mock import MockExchangeAdapter, MockConfig
from .errors import (
    ErrorCategory,
    RetryEligibility,
    ExchangeErrorInfo,
    ExchangeException,
    NetworkError,
    RateLimitedError,
    AuthenticationError,
    OrderRejectedError,
    OrderNotFoundError,
    OrderAlreadyTerminalError,
    StreamDisconnectedError,
    map_bingx_error,
    to_exception,
    create_network_error,
    create_timeout_error,
    create_rate_limit_error,
    create_stream_disconnect,
)
from .logging_utils import AdapterLogger, mask_value, mask_headers, mask_params, mask_url
from .rate_limiter import TokenBucket
from .retry import RetryPolicy
from .signing import RequestSigner, HmacSha256Signer, canonical_query, API_KEY_HEADER
from .websocket import BingXMarketStream, WebSocketConfig, ConnectionState


__all__ = [
    "ExchangeAdapter",
    "SubmitOrderRequest",
    "SubmitOrderResponse",
    "QueryOrderRequest",
    "QueryOrderResponse",
    "CancelOrderRequest",
    "CancelOrderResponse",
    "map_exchange_status_to_order_state",
    "BingXAdapter",
    "MockExchangeAdapter",
    "MockConfig",
    "ErrorCategory",
    "RetryEligibility",
    "ExchangeErrorInfo",
    "ExchangeException",
    "NetworkError",
    "RateLimitedError",
    "AuthenticationError",
    "OrderRejectedError",
    "OrderNotFoundError",
    "OrderAlreadyTerminalError",
    "StreamDisconnectedError",
    "map_bingx_error",
    "to_exception",
    "create_network_error",
    "create_timeout_error",
    "create_rate_limit_error",
    "create_stream_disconnect",
    "AdapterLogger",
    "mask_value",
    "mask_headers",
    "mask_params",
    "mask_url",
    "TokenBucket",
    "RetryPolicy",
    "RequestSigner",
    "HmacSha256Signer",
    "canonical_query",
    "API_KEY_HEADER",
    "BingXMarketStream",
    "WebSocketConfig",
    "ConnectionState",
]
