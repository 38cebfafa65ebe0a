"""
Core Module - Credentials and Trading Context.

============================================================
RESPONSIBILITY
============================================================
Loads the API key/secret pair and bundles it, together with the
clock, into an explicitly constructed TradingContext that is handed
to the exchange adapter at construction time.

- Credentials are read from a key-value (dotenv) file
- A missing file or key is fatal BEFORE any network activity
- Secret material never appears in repr/str/log output

============================================================
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from dotenv import dotenv_values

from core.clock import ClockProtocol, SystemClock
from core.exceptions import MissingConfigError


logger = logging.getLogger(__name__)


API_KEY_NAME = "API_KEY"
API_SECRET_NAME = "API_SECRET"


def _mask(value: str, visible: int = 4) -> str:
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}...{value[-visible:]}"


@dataclass(frozen=True)
class Credential:
    """API key/secret pair. Only the exchange adapter reads the secret."""
    
    api_key: str = field(repr=False)
    api_secret: str = field(repr=False)
    
    @property
    def masked_key(self) -> str:
        return _mask(self.api_key)
    
    def __repr__(self) -> str:
        return f"Credential(api_key={self.masked_key}, api_secret=****)"
    
    __str__ = __repr__


@dataclass(frozen=True)
class TradingContext:
    """
    Process-wide trading context.
    
    Built once at startup and passed to the exchange adapter. Nothing
    in the engine reaches for credentials through globals.
    """
    
    credential: Credential
    
    clock: ClockProtocol = field(default_factory=SystemClock)
    
    demo: bool = False
    """Route REST traffic to the exchange's demo (VST) environment."""


def load_credentials(path: Union[str, Path]) -> Credential:
    """
    Load credentials from a key-value file.
    
    Args:
        path: File containing API_KEY=... and API_SECRET=... lines
    
    Returns:
        Credential
    
    Raises:
        MissingConfigError: If the file or either key is absent/empty
    """
    path = Path(path)
    if not path.is_file():
        raise MissingConfigError(str(path), source="credential file")
    
    values = dotenv_values(path)
    
    for name in (API_KEY_NAME, API_SECRET_NAME):
        if not (values.get(name) or "").strip():
            raise MissingConfigError(name, source=str(path))
    
    credential = Credential(
        api_key=values[API_KEY_NAME].strip(),
        api_secret=values[API_SECRET_NAME].strip(),
    )
    logger.info(f"Loaded credentials from {path} (key {credential.masked_key})")
    return credential
