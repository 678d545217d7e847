"""
Core Module Package.

This package contains the core infrastructure components
that all other modules depend on.

Components:
- clock: Unified time abstraction
- exceptions: Custom exception hierarchy
- audit: Audit sink interface and implementations
- logging_setup: Root logger configuration
"""

from core.audit import (
    AuditEvent,
    AuditSink,
    CompositeAuditSink,
    InMemoryAuditSink,
    LoggingAuditSink,
    safe_record,
)
from core.clock import ClockFactory, ClockProtocol, MockClock, SystemClock
from core.exceptions import (
    ConfigurationError,
    ErrorCategory,
    ExhaustionError,
    MalformedResponseError,
    MarketDataError,
    NetworkFailureError,
    RateLimitedError,
    Severity,
    StorageError,
    UpstreamError,
    ValidationError,
)
from core.logging_setup import setup_logging
