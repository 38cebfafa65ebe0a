"""
Core Module Package.

Infrastructure shared by every trading component.

Components:
- clock: Unified time abstraction
- exceptions: Custom exception hierarchy
- credentials: Credential loading and the explicit trading context
"""

from .clock import ClockProtocol, SystemClock, MockClock
from .credentials import Credential, TradingContext, load_credentials
from .exceptions import (
    Severity,
    TradingException,
    ConfigurationError,
    MissingConfigError,
    InvalidConfigError,
    ExecutionError,
    StateTransitionError,
)


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "Credential",
    "TradingContext",
    "load_credentials",
    "Severity",
    "TradingException",
    "ConfigurationError",
    "MissingConfigError",
    "InvalidConfigError",
    "ExecutionError",
    "StateTransitionError",
]
