"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Exception taxonomy for the market data acquisition layer.

- Every error carries a category and a severity for the audit sink
- Component boundaries (KeyManager, fallback chain) catch these
  and convert them to typed results; they are not meant to reach
  route handlers

============================================================
EXCEPTION HIERARCHY
============================================================
MarketDataError (base)
├── ValidationError          bad input, rejected before mutation
├── ExhaustionError          no key / no source available
├── StorageError             key store / transaction failure
├── ConfigurationError       invalid configuration at startup
└── UpstreamError            one failed provider attempt
    ├── RateLimitedError     429 / quota envelope
    ├── NetworkFailureError  connection error, timeout, non-2xx
    └── MalformedResponseError

============================================================
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY / CATEGORY
# ============================================================

class Severity(Enum):
    """Severity levels used when reporting to the audit sink."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """What kind of failure an error represents."""

    VALIDATION = "validation"
    EXHAUSTION = "exhaustion"
    UPSTREAM = "upstream"
    STORAGE = "storage"
    CONFIGURATION = "configuration"


# ============================================================
# BASE EXCEPTION
# ============================================================

class MarketDataError(Exception):
    """
    Base exception for the market data layer.

    All exceptions carry:
    - severity: for alerting
    - category: for branching and reporting
    - context: for debugging (never raw secrets)
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_category: ErrorCategory = ErrorCategory.UPSTREAM

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        category: Optional[ErrorCategory] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.category = category or self.default_category
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause is not None:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def requires_immediate_action(self) -> bool:
        return self.severity in (Severity.HIGH, Severity.CRITICAL)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging / audit meta."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_log_format(self) -> str:
        """One-line representation for log records."""
        line = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            line = f"{line} | {ctx_str}"
        return line


# ============================================================
# INPUT / RESOURCE ERRORS
# ============================================================

class ValidationError(MarketDataError):
    """Invalid input parameters (provider missing, bad key id, backoff out of range)."""

    default_severity = Severity.LOW
    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if field_name:
            context["field"] = field_name
        if value is not None:
            context["value"] = str(value)[:100]
        super().__init__(message, context=context, **kwargs)
        self.field_name = field_name


class ExhaustionError(MarketDataError):
    """No key or no data source could be found for a request."""

    default_severity = Severity.MEDIUM
    default_category = ErrorCategory.EXHAUSTION


class StorageError(MarketDataError):
    """Key store transaction or query failed."""

    default_severity = Severity.HIGH
    default_category = ErrorCategory.STORAGE

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if operation:
            context["operation"] = operation
        super().__init__(message, context=context, **kwargs)
        self.operation = operation


class ConfigurationError(MarketDataError):
    """Configuration value is missing or out of range."""

    default_severity = Severity.HIGH
    default_category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context=context, **kwargs)
        self.config_key = config_key


# ============================================================
# UPSTREAM ERRORS
# ============================================================

class UpstreamError(MarketDataError):
    """A single upstream provider attempt failed."""

    default_severity = Severity.MEDIUM
    default_category = ErrorCategory.UPSTREAM

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if provider:
            context["provider"] = provider
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, context=context, **kwargs)
        self.provider = provider
        self.status_code = status_code

    @property
    def is_rate_limited(self) -> bool:
        return False


class RateLimitedError(UpstreamError):
    """Provider refused the call because the key hit its rate limit or quota."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = 429,
        retry_after_seconds: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, provider=provider, status_code=status_code, **kwargs)
        self.retry_after_seconds = retry_after_seconds
        if retry_after_seconds is not None:
            self.context["retry_after_seconds"] = retry_after_seconds

    @property
    def is_rate_limited(self) -> bool:
        return True


class NetworkFailureError(UpstreamError):
    """Connection error, timeout or unexpected HTTP status."""


class MalformedResponseError(UpstreamError):
    """Response arrived but did not contain a usable value."""

    def __init__(self, message: str, body: Optional[Any] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.body = str(body)[:500] if body is not None else None


__all__ = [
    "Severity",
    "ErrorCategory",
    "MarketDataError",
    "ValidationError",
    "ExhaustionError",
    "StorageError",
    "ConfigurationError",
    "UpstreamError",
    "RateLimitedError",
    "NetworkFailureError",
    "MalformedResponseError",
]
