"""
Source Registry - Live health registry for market data sources.

Provides:
- Source registration and composite-score selection
- Outcome and rate-limit recording
- Temporary disabling with timed partial restoration
- Periodic health tick (rate-limit resets, passive recovery)
- Single-flight processing of queued data requests

All state is process-local and mutated only from the event loop.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from core.audit import AuditSink, safe_record
from core.clock import ClockFactory, ClockProtocol
from data_sources.config import RegistryConfig, SourceDefinition
from data_sources.models import DataRequest, DataSource, SourceIncident
from data_sources.queue import RequestQueue
from data_sources.scoring import composite_score, is_selectable


logger = logging.getLogger(__name__)


AUDIT_SOURCE = "data_source_registry"

RequestHandler = Callable[[DataRequest, DataSource], Awaitable[Any]]


def source_from_definition(definition: SourceDefinition, now: datetime) -> DataSource:
    return DataSource(
        id=definition.id,
        name=definition.name,
        type=definition.type,
        priority=definition.priority,
        provider=definition.provider,
        health_score=float(definition.health_score),
        response_time=float(definition.response_time),
        error_rate=float(definition.error_rate),
        rate_limit_remaining=definition.rate_limit,
        rate_limit_reset=now + timedelta(seconds=definition.rate_limit_window_seconds),
        last_check=now,
        capabilities=frozenset(definition.capabilities),
        asset_classes=frozenset(definition.asset_classes),
        default_rate_limit=definition.rate_limit,
        rate_limit_window_seconds=definition.rate_limit_window_seconds,
    )


class DataSourceRegistry:
    """
    Central registry of data sources.

    Features:
    - Composite-score selection with health / error / rate-limit cut-offs
    - Adaptive health from recorded outcomes
    - Background health tick and request queue processor
    - Incident log for status views

    Usage:
        registry = DataSourceRegistry(RegistryConfig(), audit_sink=sink)
        registry.load_defaults()

        async with registry:
            source = registry.select_source(DataRequest(symbol="EUR/USD"))
            ...
            registry.record_outcome(source.id, success=True, latency_ms=320)
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[ClockProtocol] = None,
        handler: Optional[RequestHandler] = None,
    ) -> None:
        self._config = config or RegistryConfig()
        self._audit = audit_sink
        self._clock = clock or ClockFactory.get_clock()
        self._handler = handler

        self._sources: dict[str, DataSource] = {}
        self._order: list[str] = []

        self._queue = RequestQueue()
        self._processing = False

        self._health_task: Optional[asyncio.Task] = None
        self._queue_task: Optional[asyncio.Task] = None
        self._restore_handles: dict[str, asyncio.TimerHandle] = {}
        self._running = False

        self._incidents: list[SourceIncident] = []

    # =========================================================
    # REGISTRATION
    # =========================================================

    def load_defaults(self) -> None:
        """Register every source of the configuration."""
        now = self._clock.now()
        for definition in self._config.sources:
            self.register(source_from_definition(definition, now))
        logger.info(f"Initialized {len(self._config.sources)} data sources")

    def register(self, source: DataSource) -> None:
        """Register a source. Registration order breaks score ties."""
        if source.id in self._sources:
            logger.warning(f"Source '{source.id}' already registered, replacing")
        else:
            self._order.append(source.id)
        self._sources[source.id] = source
        logger.info(f"Registered source '{source.id}' ({source.provider}, priority {source.priority})")

    def bind_handler(self, handler: RequestHandler) -> None:
        """Operation performed for each queued request."""
        self._handler = handler

    def get_source(self, source_id: str) -> Optional[DataSource]:
        return self._sources.get(source_id)

    def list_sources(self) -> list[DataSource]:
        return [self._sources[source_id] for source_id in self._order]

    # =========================================================
    # SELECTION
    # =========================================================

    def score(self, source: DataSource) -> float:
        return composite_score(source, self._config.weights)

    def select_source(self, request: DataRequest) -> Optional[DataSource]:
        """
        Best source for a request, or None.

        Compatible sources that pass the thresholds are ranked by
        composite score; ties keep registration order.
        """
        candidates = [
            s for s in self.list_sources()
            if s.supports(request) and is_selectable(s, self._config.thresholds)
        ]

        if not candidates:
            logger.warning(f"No data source available for {request.type.value} {request.symbol}")
            self._log_incident("registry", "no_source", "No data source available", request)
            safe_record(
                self._audit, "warning", AUDIT_SOURCE,
                "No data source available for request", request.to_dict(),
            )
            return None

        # sorted() is stable, so equal scores stay in registration order
        ranked = sorted(candidates, key=self.score, reverse=True)
        selected = ranked[0]
        logger.debug(f"Selected source {selected.name} (score {self.score(selected):.1f})")
        return selected

    def source_for_provider(self, provider: str) -> Optional[DataSource]:
        """Best-ranked source of a provider, regardless of thresholds."""
        candidates = [s for s in self.list_sources() if s.provider == provider]
        if not candidates:
            return None
        return sorted(candidates, key=self.score, reverse=True)[0]

    # =========================================================
    # OUTCOMES
    # =========================================================

    def record_outcome(self, source_id: str, success: bool, latency_ms: float) -> None:
        """Fold one request outcome into a source's health signals."""
        source = self._sources.get(source_id)
        if source is None:
            logger.warning(f"record_outcome: unknown source '{source_id}'")
            return

        steps = self._config.adjustments
        if success:
            source.success_count += 1
            source.response_time = (source.response_time + latency_ms) / 2
            if not source.is_disabled:
                source.health_score = min(100.0, source.health_score + steps.success_health_gain)
            source.error_rate = max(0.0, source.error_rate - steps.success_error_decay)
        else:
            source.error_count += 1
            if not source.is_disabled:
                source.health_score = max(0.0, source.health_score - steps.failure_health_penalty)
            source.error_rate = min(100.0, source.error_rate + steps.failure_error_gain)
            self._log_incident(source_id, "request_failed", f"Request failed after {latency_ms:.0f}ms")

        source.last_check = self._clock.now()
        logger.debug(
            f"Updated {source.name}: health={source.health_score:.1f}, "
            f"error_rate={source.error_rate:.1f}%"
        )

    def record_rate_limit(self, source_id: str, remaining: int, reset_at: Optional[datetime] = None) -> None:
        """Store rate-limit counters; a nearly exhausted allowance costs health."""
        source = self._sources.get(source_id)
        if source is None:
            logger.warning(f"record_rate_limit: unknown source '{source_id}'")
            return

        source.rate_limit_remaining = remaining
        if reset_at is not None:
            source.rate_limit_reset = reset_at

        steps = self._config.adjustments
        if remaining < steps.low_rate_limit_threshold:
            logger.warning(f"Source {source.name} is close to its rate limit ({remaining} remaining)")
            if not source.is_disabled:
                source.health_score = max(
                    steps.low_rate_limit_floor,
                    source.health_score - steps.low_rate_limit_penalty,
                )
            self._log_incident(source_id, "rate_limit_low", f"{remaining} requests remaining")

    # =========================================================
    # DISABLE / RESTORE
    # =========================================================

    def disable(self, source_id: str, duration_ms: Optional[int] = None) -> bool:
        """
        Force health to 0 for a cool-down, then restore it partially.

        Returns:
            False for an unknown source
        """
        source = self._sources.get(source_id)
        if source is None:
            logger.warning(f"disable: unknown source '{source_id}'")
            return False

        if duration_ms is None:
            duration_ms = self._config.adjustments.disable_duration_ms

        source.health_score = 0.0
        source.disabled_until = self._clock.now() + timedelta(milliseconds=duration_ms)

        previous = self._restore_handles.pop(source_id, None)
        if previous is not None:
            previous.cancel()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # The health tick restores once disabled_until passes
            loop = None
        if loop is not None:
            self._restore_handles[source_id] = loop.call_later(duration_ms / 1000, self._restore, source_id)

        logger.warning(f"Disabled source {source.name} for {duration_ms / 1000:.0f}s")
        self._log_incident(source_id, "disabled", f"Disabled for {duration_ms}ms")
        safe_record(
            self._audit, "warning", AUDIT_SOURCE, f"Source {source_id} disabled",
            {"source_id": source_id, "duration_ms": duration_ms},
        )
        return True

    def _restore(self, source_id: str) -> None:
        self._restore_handles.pop(source_id, None)
        source = self._sources.get(source_id)
        if source is None or not source.is_disabled:
            return
        source.disabled_until = None
        source.health_score = self._config.adjustments.restore_health
        logger.info(f"Re-enabled source {source.name} at health {source.health_score:.0f}")
        self._log_incident(source_id, "restored", "Source re-enabled")

    # =========================================================
    # HEALTH TICK
    # =========================================================

    def run_health_check(self) -> None:
        """One tick of the health loop."""
        now = self._clock.now()
        steps = self._config.adjustments

        for source in self.list_sources():
            if source.is_disabled:
                if source.disabled_until <= now:
                    self._restore(source.id)
                continue

            if source.rate_limit_reset is not None and source.rate_limit_reset <= now:
                source.rate_limit_remaining = source.default_rate_limit
                source.rate_limit_reset = now + timedelta(seconds=source.rate_limit_window_seconds)
                source.health_score = min(100.0, source.health_score + steps.reset_health_bonus)
                logger.info(f"Reset rate limit of {source.name} to {source.default_rate_limit}")

            if source.health_score < steps.drift_ceiling:
                source.health_score = min(100.0, source.health_score + steps.drift_step)

    async def _health_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.health_check_interval_seconds)
                logger.debug("Checking data source health")
                self.run_health_check()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Health loop error: {e}")

    # =========================================================
    # REQUEST QUEUE
    # =========================================================

    def enqueue(self, request: DataRequest) -> "asyncio.Future[Any]":
        """
        Queue a request for the processor.

        The future resolves to the handler's result, None when no
        source was available, or the handler's exception.
        """
        future = self._queue.push(request)
        logger.debug(f"Request {request.request_id} queued, depth={len(self._queue)}")
        return future

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def process_next(self) -> bool:
        """
        Process at most one queued request.

        Returns:
            False if a request is already in flight or the queue is empty
        """
        if self._processing:
            return False
        item = self._queue.pop()
        if item is None:
            return False

        self._processing = True
        try:
            await self._process(item.request, item.future)
        finally:
            self._processing = False
        return True

    async def _process(self, request: DataRequest, future: "asyncio.Future[Any]") -> None:
        source = self.select_source(request)
        if source is None:
            if not future.done():
                future.set_result(None)
            return

        if self._handler is None:
            # Routing only
            if not future.done():
                future.set_result(source)
            return

        logger.debug(f"Processing {request.type.value} request for {request.symbol} via {source.name}")
        started = self._clock.monotonic()
        try:
            result = await self._handler(request, source)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            latency_ms = (self._clock.monotonic() - started) * 1000
            self.record_outcome(source.id, False, latency_ms)
            logger.error(f"Request {request.request_id} via {source.name} failed: {e}")
            if not future.done():
                future.set_exception(e)
            return

        latency_ms = (self._clock.monotonic() - started) * 1000
        self.record_outcome(source.id, True, latency_ms)
        if not future.done():
            future.set_result(result)

    async def _queue_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.queue_interval_seconds)
                await self.process_next()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Queue processor error: {e}")

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def start(self) -> None:
        """Start the health loop and the queue processor."""
        if self._running:
            return
        self._running = True
        self._health_task = asyncio.create_task(self._health_loop())
        self._queue_task = asyncio.create_task(self._queue_loop())
        logger.info(
            f"Started registry loops (health={self._config.health_check_interval_seconds}s, "
            f"queue={self._config.queue_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Cancel background tasks, restoration timers and pending requests."""
        self._running = False

        for task in (self._health_task, self._queue_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._health_task = None
        self._queue_task = None

        for handle in self._restore_handles.values():
            handle.cancel()
        self._restore_handles.clear()

        cancelled = self._queue.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending requests")
        logger.info("Stopped registry loops")

    @property
    def is_running(self) -> bool:
        return self._running

    async def __aenter__(self) -> "DataSourceRegistry":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # =========================================================
    # STATUS / INCIDENTS
    # =========================================================

    def get_sources_status(self) -> list[dict[str, Any]]:
        return [
            {
                "id": s.id,
                "name": s.name,
                "type": s.type.value,
                "provider": s.provider,
                "health_score": s.health_score,
                "error_rate": s.error_rate,
                "response_time": s.response_time,
                "rate_limit_remaining": s.rate_limit_remaining,
                "success_count": s.success_count,
                "error_count": s.error_count,
                "disabled": s.is_disabled,
                "composite_score": round(self.score(s)),
            }
            for s in self.list_sources()
        ]

    def get_incidents(self, limit: int = 100) -> list[SourceIncident]:
        """Get recent incidents."""
        return self._incidents[-limit:]

    def _log_incident(
        self,
        source_id: str,
        incident_type: str,
        message: str,
        request: Optional[DataRequest] = None,
    ) -> None:
        self._incidents.append(SourceIncident(
            source_id=source_id,
            incident_type=incident_type,
            timestamp=self._clock.now(),
            message=message,
            request=request.to_dict() if request else None,
        ))

        # Trim to max size
        if len(self._incidents) > self._config.max_incidents:
            self._incidents = self._incidents[-self._config.max_incidents:]
