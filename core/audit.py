"""
Core Module - Audit Sink.

============================================================
RESPONSIBILITY
============================================================
Consumer side of the audit/structured-logging pipeline.

Components report lease failures, validation rejections, source
fallbacks and exhaustion through record(level, source, message,
meta). Recording is fire-and-forget: a broken sink never blocks
or fails the operation that reported to it.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional


logger = logging.getLogger(__name__)


LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass
class AuditEvent:
    """One recorded audit event."""
    level: str
    source: str
    message: str
    meta: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "source": self.source,
            "message": self.message,
            "meta": self.meta,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditSink(ABC):
    """Interface implemented by the logging/audit collaborator."""

    @abstractmethod
    def record(
        self,
        level: str,
        source: str,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes audit events to the `audit.<source>` logger."""

    def __init__(self, prefix: str = "audit") -> None:
        self._prefix = prefix

    def record(
        self,
        level: str,
        source: str,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        audit_logger = logging.getLogger(f"{self._prefix}.{source}")
        log_level = LEVELS.get(level.lower(), logging.INFO)
        if meta:
            audit_logger.log(log_level, f"{message} | {meta}")
        else:
            audit_logger.log(log_level, message)


class InMemoryAuditSink(AuditSink):
    """Keeps the most recent events in a bounded buffer (status views, tests)."""

    def __init__(self, max_events: int = 1000) -> None:
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)

    def record(
        self,
        level: str,
        source: str,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._events.append(AuditEvent(level=level, source=source, message=message, meta=dict(meta or {})))

    def events(
        self,
        source: Optional[str] = None,
        level: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        selected = [
            e for e in self._events
            if (source is None or e.source == source) and (level is None or e.level == level)
        ]
        return selected[-limit:]

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


class CompositeAuditSink(AuditSink):
    """Fans an event out to several sinks; one failing sink does not stop the others."""

    def __init__(self, sinks: Iterable[AuditSink]) -> None:
        self._sinks = list(sinks)

    def record(
        self,
        level: str,
        source: str,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        for sink in self._sinks:
            safe_record(sink, level, source, message, meta)


def safe_record(
    sink: Optional[AuditSink],
    level: str,
    source: str,
    message: str,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    """Record on a sink, swallowing and logging any sink failure."""
    if sink is None:
        return
    try:
        sink.record(level, source, message, meta or {})
    except Exception as e:
        logger.error(f"Audit sink {type(sink).__name__} failed: {e}")


__all__ = [
    "AuditEvent",
    "AuditSink",
    "LoggingAuditSink",
    "InMemoryAuditSink",
    "CompositeAuditSink",
    "safe_record",
]
