"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Shared exception hierarchy for the bot.

- Configuration problems are fatal at startup
- Every exception carries a severity that picks its log level
- Context travels with the exception for log lines

Exchange-specific exceptions live in
``execution_engine.adapters.errors`` and derive from ExecutionError.

============================================================
EXCEPTION HIERARCHY
============================================================
TradingException (base)
├── ConfigurationError
│   ├── MissingConfigError
│   └── InvalidConfigError
├── ExecutionError
│   └── (exchange errors, see execution_engine.adapters.errors)
└── StateTransitionError

============================================================
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels."""
    
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


# ============================================================
# BASE EXCEPTION
# ============================================================

class TradingException(Exception):
    """
    Base exception for all bot errors.
    
    Carries severity, a context dict and the time it was raised.
    """
    
    default_severity: Severity = Severity.MEDIUM
    
    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        
        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)
    
    @property
    def log_level(self) -> int:
        """``logging`` level matching the severity."""
        return _LOG_LEVELS[self.severity]


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(TradingException):
    """Error in configuration. Always fatal at startup."""
    
    default_severity = Severity.HIGH
    
    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        
        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]
        
        super().__init__(message, context=context, **kwargs)


class MissingConfigError(ConfigurationError):
    """Required configuration is missing."""
    
    def __init__(self, key: str, source: str = "config"):
        super().__init__(
            message=f"Missing required configuration: {key} ({source})",
            config_key=key,
            context={"source": source},
        )


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""
    
    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid configuration for {key}: {reason}",
            config_key=key,
            actual_value=value,
            context={"reason": reason},
        )


# ============================================================
# EXECUTION / STATE ERRORS
# ============================================================

class ExecutionError(TradingException):
    """Base class for execution-related errors."""
    
    default_severity = Severity.HIGH


class StateTransitionError(TradingException):
    """Invalid order state transition."""
    
    default_severity = Severity.HIGH
    
    def __init__(
        self,
        message: str,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
    ):
        context = {}
        if from_state:
            context["from_state"] = from_state
        if to_state:
            context["to_state"] = to_state
        
        super().__init__(message, context=context)
