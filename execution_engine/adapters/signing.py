"""
Exchange Adapter - Request Signing.

============================================================
PURPOSE
============================================================
Pluggable request signing. The adapter only knows the
RequestSigner interface; the BingX HMAC scheme lives here.

BingX scheme:
    payload   = "&".join(f"{k}={v}" for k, v in sorted(params))
    signature = hex(HMAC_SHA256(api_secret, payload))

============================================================
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping

from core.credentials import Credential


API_KEY_HEADER = "X-BX-APIKEY"


def canonical_query(params: Mapping[str, Any]) -> str:
    """Parameters sorted by key and joined as ``k=v&k=v`` without encoding."""
    return "&".join(f"{key}={params[key]}" for key in sorted(params))


class RequestSigner(ABC):
    """Signs private REST requests."""
    
    @abstractmethod
    def sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``params`` including the signature."""
        pass
    
    @abstractmethod
    def headers(self) -> Dict[str, str]:
        """Authentication headers sent with every private call."""
        pass


class HmacSha256Signer(RequestSigner):
    """HMAC-SHA256 hex signer used by the BingX swap API."""
    
    def __init__(self, credential: Credential):
        self._credential = credential
    
    def signature(self, payload: str) -> str:
        return hmac.new(
            self._credential.api_secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
    
    def sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        signed = dict(params)
        signed["signature"] = self.signature(canonical_query(params))
        return signed
    
    def headers(self) -> Dict[str, str]:
        return {API_KEY_HEADER: self._credential.api_key}
    
    def __repr__(self) -> str:
        return f"HmacSha256Signer({self._credential!r})"
