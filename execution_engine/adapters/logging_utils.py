"""
Exchange Adapter - Secure Logging Utilities.

============================================================
PURPOSE
============================================================
Secure logging for exchange adapter operations with:
- Credential masking (API key header, signature parameter)
- Request/response sanitization
- Structured (JSON) log lines

============================================================
SECURITY REQUIREMENTS
============================================================
1. NEVER log raw API keys or secrets
2. Mask sensitive headers (X-BX-APIKEY, Authorization)
3. Mask signature query parameters

============================================================
"""

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


# ============================================================
# SENSITIVE DATA PATTERNS
# ============================================================

# Header names that should be masked
SENSITIVE_HEADERS = {
    "authorization",
    "x-api-key",
    "x-bx-apikey",
    "api-key",
    "secret",
    "signature",
}

# Parameter names that should be masked
SENSITIVE_PARAMS = {
    "apikey",
    "api_key",
    "secret",
    "api_secret",
    "secretkey",
    "signature",
    "sign",
    "listenkey",
}

# Hex HMAC-SHA256 digests embedded in free text
HMAC_PATTERN = re.compile(r"\b[a-f0-9]{64}\b", re.IGNORECASE)


# ============================================================
# MASKING FUNCTIONS
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only first few chars.
    
    Args:
        value: Value to mask
        show_chars: Number of chars to show at start
    
    Returns:
        Masked value
    """
    if not value or len(value) <= show_chars * 2:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of ``headers`` with sensitive values masked."""
    if not headers:
        return {}
    
    return {
        key: mask_value(str(value)) if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def mask_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``params`` with sensitive values masked."""
    if not params:
        return {}
    
    masked = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            masked[key] = mask_value(str(value)) if value else value
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        elif isinstance(value, str):
            masked[key] = HMAC_PATTERN.sub("***HMAC***", value)
        else:
            masked[key] = value
    return masked


def mask_url(url: str) -> str:
    """Mask sensitive query parameters in a URL."""
    if not url:
        return url
    
    for param in SENSITIVE_PARAMS:
        pattern = re.compile(f"({param}=)([^&]+)", re.IGNORECASE)
        url = pattern.sub(lambda m: f"{m.group(1)}***", url)
    
    return url


# ============================================================
# ADAPTER LOGGER
# ============================================================

@dataclass
class RequestLogEntry:
    """Structured log entry for one REST round trip."""
    
    exchange_id: str
    operation: str
    request_id: str
    method: str
    endpoint: str
    params: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None
    status_code: Optional[int] = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    
    def to_json(self) -> str:
        return json.dumps(
            {k: v for k, v in asdict(self).items() if v is not None},
            default=str,
        )


class AdapterLogger:
    """
    Secure logger for exchange adapter operations.
    
    Every entry is masked before it reaches the logging module.
    """
    
    def __init__(self, exchange_id: str, logger_name: Optional[str] = None):
        self._exchange_id = exchange_id
        self._logger = logging.getLogger(logger_name or f"exchange_adapter.{exchange_id}")
        self._request_counter = 0
    
    def log_request(
        self,
        operation: str,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Log outgoing request.
        
        Returns:
            Request ID for correlation
        """
        self._request_counter += 1
        request_id = f"{self._exchange_id}-{self._request_counter}"
        
        entry = RequestLogEntry(
            exchange_id=self._exchange_id,
            operation=operation,
            request_id=request_id,
            method=method,
            endpoint=mask_url(endpoint),
            params=mask_params(params) if params else None,
            headers=mask_headers(headers) if headers else None,
        )
        self._logger.debug(f"REQUEST: {entry.to_json()}")
        return request_id
    
    def log_response(
        self,
        operation: str,
        request_id: str,
        status_code: Optional[int],
        latency_ms: float,
        error: Optional[str] = None,
    ) -> None:
        """Log the outcome of a request; failures at WARNING."""
        entry = RequestLogEntry(
            exchange_id=self._exchange_id,
            operation=operation,
            request_id=request_id,
            method="",
            endpoint="",
            status_code=status_code,
            latency_ms=round(latency_ms, 2),
            error=HMAC_PATTERN.sub("***HMAC***", error[:200]) if error else None,
        )
        
        if error:
            self._logger.warning(f"RESPONSE_ERROR: {entry.to_json()}")
        else:
            self._logger.debug(f"RESPONSE: {entry.to_json()}")
