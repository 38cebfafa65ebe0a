"""
Exchange Adapter - Error Handling and Mapping.

============================================================
PURPOSE
============================================================
Standardized error handling for the exchange adapter with:
- Unified error taxonomy
- BingX error code mapping (the only place exchange codes appear)
- Retry eligibility classification
- Typed exceptions the execution engine reacts to

============================================================
ERROR CATEGORIES
============================================================
1. NETWORK         - Connection issues, timeouts, 5xx
2. RATE_LIMIT      - Too many requests
3. AUTHENTICATION  - Invalid credentials / signature (fatal)
4. INVALID_ORDER   - Order validation failures
5. INSUFFICIENT    - Insufficient margin/balance
6. ORDER_STATE     - Order not found / already terminal
7. UNKNOWN         - Unclassified errors

============================================================
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from core.exceptions import ExecutionError, Severity


logger = logging.getLogger(__name__)


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(Enum):
    """Standardized error categories."""
    
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    INVALID_ORDER = "INVALID_ORDER"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INSUFFICIENT_MARGIN = "INSUFFICIENT_MARGIN"
    MAX_POSITION = "MAX_POSITION"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_ALREADY_TERMINAL = "ORDER_ALREADY_TERMINAL"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether error is eligible for retry."""
    
    RETRY = "RETRY"           # Safe to retry
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry with exponential backoff


# ============================================================
# ERROR INFO
# ============================================================

@dataclass
class ExchangeErrorInfo:
    """Normalized description of one exchange failure."""
    
    category: ErrorCategory
    code: str               # Normalized error code
    message: str            # Human-readable message
    
    retry_eligible: RetryEligibility
    
    exchange_code: Optional[str] = None
    http_status: Optional[int] = None
    exchange_id: str = "bingx_swap"
    operation: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "code": self.code,
            "message": self.message,
            "retry_eligible": self.retry_eligible.value,
            "exchange_code": self.exchange_code,
            "http_status": self.http_status,
            "exchange_id": self.exchange_id,
            "operation": self.operation,
        }
    
    def is_retryable(self) -> bool:
        """Check if error is retryable."""
        return self.retry_eligible in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)
    
    def __str__(self) -> str:
        return f"[{self.category.value}] {self.code}: {self.message}"


# ============================================================
# EXCEPTIONS
# ============================================================

class ExchangeException(ExecutionError):
    """Base exception carrying an ExchangeErrorInfo."""
    
    def __init__(self, info: ExchangeErrorInfo):
        self.info = info
        super().__init__(str(info), context=info.to_dict())
    
    @property
    def is_retryable(self) -> bool:
        return self.info.is_retryable()


class NetworkError(ExchangeException):
    """Transient transport failure; retried, then surfaced after exhaustion."""
    
    default_severity = Severity.MEDIUM


class RateLimitedError(ExchangeException):
    """Local limiter timed out or the exchange throttled the request."""
    
    default_severity = Severity.MEDIUM


class AuthenticationError(ExchangeException):
    """Credentials rejected. Fatal, never retried."""
    
    default_severity = Severity.CRITICAL


class OrderRejectedError(ExchangeException):
    """Exchange refused the order for a logical reason."""
    
    default_severity = Severity.MEDIUM
    
    @property
    def reason(self) -> str:
        return self.info.category.value


class OrderNotFoundError(ExchangeException):
    """Exchange does not know the order."""
    
    default_severity = Severity.LOW


class OrderAlreadyTerminalError(ExchangeException):
    """Order is already filled/cancelled on the exchange."""
    
    default_severity = Severity.LOW


class StreamDisconnectedError(ExchangeException):
    """Market data stream dropped; the caller may resubscribe."""
    
    default_severity = Severity.MEDIUM


_EXCEPTION_BY_CATEGORY = {
    ErrorCategory.NETWORK: NetworkError,
    ErrorCategory.TIMEOUT: NetworkError,
    ErrorCategory.EXCHANGE_ERROR: NetworkError,
    ErrorCategory.RATE_LIMIT: RateLimitedError,
    ErrorCategory.AUTHENTICATION: AuthenticationError,
    ErrorCategory.ORDER_NOT_FOUND: OrderNotFoundError,
    ErrorCategory.ORDER_ALREADY_TERMINAL: OrderAlreadyTerminalError,
}


def to_exception(info: ExchangeErrorInfo) -> ExchangeException:
    """
    Build the typed exception for an error.
    
    Everything that is not transport, throttling, auth or order-state
    related is an exchange-logical rejection.
    """
    exc_type = _EXCEPTION_BY_CATEGORY.get(info.category, OrderRejectedError)
    return exc_type(info)


# ============================================================
# BINGX ERROR MAPPING
# ============================================================

# BingX swap API error codes to unified category
BINGX_ERROR_MAP: Dict[int, Tuple[ErrorCategory, RetryEligibility]] = {
    # Authentication
    100001: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),   # signature mismatch
    100412: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),   # null signature
    100413: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),   # incorrect api key
    100419: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),   # ip not whitelisted
    
    # Rate limiting
    100410: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),
    
    # Clock skew / transient
    100421: (ErrorCategory.TIMEOUT, RetryEligibility.RETRY),
    100500: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    100503: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.BACKOFF),
    80001: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    80012: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.BACKOFF),
    
    # Order validation
    80014: (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),
    109400: (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),
    101400: (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    101204: (ErrorCategory.INSUFFICIENT_MARGIN, RetryEligibility.NO_RETRY),
    101209: (ErrorCategory.MAX_POSITION, RetryEligibility.NO_RETRY),
    
    # Order state
    80016: (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),
    80018: (ErrorCategory.ORDER_ALREADY_TERMINAL, RetryEligibility.NO_RETRY),
}


def map_bingx_error(
    code: int,
    message: str,
    http_status: Optional[int] = None,
    operation: Optional[str] = None,
) -> ExchangeErrorInfo:
    """
    Map a BingX error to unified format.
    
    Args:
        code: BingX ``code`` field (0 means success, never passed here)
        message: BingX ``msg`` field
        http_status: HTTP status code
        operation: Adapter operation name for context
    
    Returns:
        Unified ExchangeErrorInfo
    """
    if code in BINGX_ERROR_MAP:
        category, retry = BINGX_ERROR_MAP[code]
    elif http_status == 429:
        category = ErrorCategory.RATE_LIMIT
        retry = RetryEligibility.BACKOFF
    elif http_status in (401, 403):
        category = ErrorCategory.AUTHENTICATION
        retry = RetryEligibility.NO_RETRY
    elif http_status and http_status >= 500:
        category = ErrorCategory.NETWORK
        retry = RetryEligibility.RETRY
    else:
        category = ErrorCategory.UNKNOWN
        retry = RetryEligibility.NO_RETRY
    
    return ExchangeErrorInfo(
        category=category,
        code=f"BINGX_{code}",
        message=message,
        retry_eligible=retry,
        exchange_code=str(code),
        http_status=http_status,
        operation=operation,
    )


# ============================================================
# NETWORK ERROR HELPERS
# ============================================================

def create_network_error(message: str, operation: Optional[str] = None) -> NetworkError:
    """Create network error."""
    return NetworkError(ExchangeErrorInfo(
        category=ErrorCategory.NETWORK,
        code="NETWORK_ERROR",
        message=message,
        retry_eligible=RetryEligibility.RETRY,
        operation=operation,
    ))


def create_timeout_error(timeout_seconds: float, operation: Optional[str] = None) -> NetworkError:
    """Create timeout error."""
    return NetworkError(ExchangeErrorInfo(
        category=ErrorCategory.TIMEOUT,
        code="TIMEOUT",
        message=f"Request timed out after {timeout_seconds}s",
        retry_eligible=RetryEligibility.RETRY,
        operation=operation,
    ))


def create_rate_limit_error(
    message: str = "Rate limit exceeded",
    retry_eligible: RetryEligibility = RetryEligibility.NO_RETRY,
) -> RateLimitedError:
    """
    Create rate limit error.
    
    Local limiter timeouts default to NO_RETRY: the caller already
    waited as long as it was willing to.
    """
    return RateLimitedError(ExchangeErrorInfo(
        category=ErrorCategory.RATE_LIMIT,
        code="RATE_LIMIT",
        message=message,
        retry_eligible=retry_eligible,
    ))


def create_stream_disconnect(message: str) -> StreamDisconnectedError:
    return StreamDisconnectedError(ExchangeErrorInfo(
        category=ErrorCategory.NETWORK,
        code="STREAM_DISCONNECTED",
        message=message,
        retry_eligible=RetryEligibility.BACKOFF,
        operation="stream_market_data",
    ))
