"""
Tests for the Data Source Registry.

============================================================
PURPOSE
============================================================
Selection, adaptive health and queue processing of data sources.

TEST PRINCIPLES:
- Health stays within [0, 100], error rate within [0, 100]
- Unselectable sources are never returned
- Time-based behavior is driven by a mock clock
- At most one queued request in flight

============================================================
"""

import asyncio
from dataclasses import replace

import pytest

from data_sources.config import RegistryConfig, ScoreWeights
from data_sources.models import (
    DataRequest,
    DataSource,
    ProviderClass,
    RequestType,
    SourceType,
    classify_symbol,
)
from data_sources.registry import AUDIT_SOURCE, DataSourceRegistry
from data_sources.scoring import composite_score


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def registry(audit, clock):
    registry = DataSourceRegistry(RegistryConfig(), audit, clock)
    registry.load_defaults()
    return registry


def make_source(source_id="custom", **overrides):
    fields = dict(
        id=source_id,
        name=source_id,
        type=SourceType.PRIMARY,
        priority=1,
        provider="twelvedata",
        health_score=100.0,
        response_time=500.0,
        error_rate=0.0,
        rate_limit_remaining=100,
        default_rate_limit=100,
    )
    fields.update(overrides)
    return DataSource(**fields)


# ============================================================
# CLASSIFICATION / SCORING
# ============================================================

class TestClassification:
    """Tests for symbol classification."""

    @pytest.mark.parametrize("symbol,expected", [
        ("BTC/USDT", ProviderClass.CRYPTO),
        ("ETHUSDT", ProviderClass.CRYPTO),
        ("doge/usd", ProviderClass.CRYPTO),
        ("EUR/USD", ProviderClass.FOREX),
        ("AAPL", ProviderClass.EQUITY),
        ("", ProviderClass.EQUITY),
    ])
    def test_classify_symbol(self, symbol, expected):
        assert classify_symbol(symbol) == expected

    def test_request_type_from_string(self):
        assert DataRequest(symbol="AAPL", type="historical").type == RequestType.HISTORICAL


class TestScoring:
    """Tests for the composite score."""

    def test_default_source_score(self):
        weights = ScoreWeights()
        source = make_source(health_score=100, response_time=500, error_rate=0, priority=1)

        assert composite_score(source, weights) == pytest.approx(84.0)

    def test_weights_normalized(self):
        weights = ScoreWeights(health=4, speed=3, reliability=2, priority=1)

        assert weights.total() == pytest.approx(1.0)
        assert weights.health == pytest.approx(0.4)

    def test_score_monotonic(self):
        weights = ScoreWeights()
        base = make_source()

        assert composite_score(replace(base, health_score=90), weights) < composite_score(base, weights)
        assert composite_score(replace(base, response_time=900), weights) < composite_score(base, weights)
        assert composite_score(replace(base, error_rate=20), weights) < composite_score(base, weights)
        assert composite_score(replace(base, priority=5), weights) < composite_score(base, weights)

    def test_terms_never_negative(self):
        weights = ScoreWeights()
        worst = make_source(health_score=0, response_time=5000, error_rate=100, priority=20)

        assert composite_score(worst, weights) == 0


# ============================================================
# SELECTION
# ============================================================

class TestSelectSource:
    """Tests for select_source."""

    def test_forex_prefers_twelvedata_primary(self, registry):
        assert registry.select_source(DataRequest(symbol="EUR/USD")).id == "twelvedata_primary"

    def test_crypto_prefers_binance(self, registry):
        assert registry.select_source(DataRequest(symbol="BTC/USDT")).id == "binance_crypto"

    def test_capability_filter(self, registry):
        request = DataRequest(symbol="BTC/USDT", type=RequestType.INDICATORS)

        assert registry.select_source(request).id == "twelvedata_primary"

    def test_exhausted_rate_limit_excluded(self, registry):
        registry.record_rate_limit("twelvedata_primary", 0)

        selected = registry.select_source(DataRequest(symbol="EUR/USD"))

        assert selected.id == "cached_data"

    def test_low_health_excluded(self, registry):
        registry.get_source("binance_crypto").health_score = 50

        selected = registry.select_source(DataRequest(symbol="BTC/USDT"))

        assert selected.id == "twelvedata_primary"

    def test_high_error_rate_excluded(self, registry):
        registry.get_source("binance_crypto").error_rate = 50

        assert registry.select_source(DataRequest(symbol="BTC/USDT")).id != "binance_crypto"

    def test_ties_keep_registration_order(self, audit, clock):
        registry = DataSourceRegistry(RegistryConfig(sources=[]), audit, clock)
        registry.register(make_source("first"))
        registry.register(make_source("second"))

        assert registry.select_source(DataRequest(symbol="AAPL")).id == "first"

    def test_no_source_available(self, registry, audit):
        for source in registry.list_sources():
            registry.disable(source.id)

        assert registry.select_source(DataRequest(symbol="EUR/USD")) is None
        assert registry.get_incidents()[-1].incident_type == "no_source"
        assert any("No data source" in e.message for e in audit.events(source=AUDIT_SOURCE))

    def test_source_for_provider_ignores_thresholds(self, registry):
        registry.get_source("binance_crypto").health_score = 10

        assert registry.source_for_provider("binance").id == "binance_crypto"
        assert registry.source_for_provider("unknown") is None


# ============================================================
# OUTCOMES
# ============================================================

class TestRecordOutcome:
    """Tests for outcome and rate-limit recording."""

    def test_five_failures_from_full_health(self, registry):
        for _ in range(5):
            registry.record_outcome("twelvedata_primary", False, 1000)

        source = registry.get_source("twelvedata_primary")
        assert source.health_score == 75
        assert source.error_rate == 10
        assert source.error_count == 5

    def test_failures_clamp_at_bounds(self, registry):
        source = registry.get_source("twelvedata_primary")
        source.health_score = 12
        source.error_rate = 97

        for _ in range(5):
            registry.record_outcome("twelvedata_primary", False, 1000)

        assert source.health_score == 0
        assert source.error_rate == 100

    def test_success_updates_signals(self, registry):
        source = registry.get_source("twelvedata_secondary")

        registry.record_outcome("twelvedata_secondary", True, 200)

        assert source.health_score == 96
        assert source.error_rate == 4.5
        assert source.response_time == 400
        assert source.success_count == 1

    def test_success_caps_health(self, registry):
        registry.record_outcome("twelvedata_primary", True, 500)

        assert registry.get_source("twelvedata_primary").health_score == 100

    def test_unknown_source_ignored(self, registry):
        registry.record_outcome("missing", False, 100)
        registry.record_rate_limit("missing", 0)

    def test_low_rate_limit_costs_health(self, registry):
        source = registry.get_source("twelvedata_primary")

        registry.record_rate_limit("twelvedata_primary", 5)

        assert source.rate_limit_remaining == 5
        assert source.health_score == 80
        assert registry.get_incidents()[-1].incident_type == "rate_limit_low"

    def test_low_rate_limit_floor(self, registry):
        source = registry.get_source("twelvedata_primary")
        source.health_score = 30

        registry.record_rate_limit("twelvedata_primary", 5)

        assert source.health_score == 20

    def test_incident_log_trimmed(self, audit, clock):
        registry = DataSourceRegistry(RegistryConfig(max_incidents=3), audit, clock)
        registry.load_defaults()

        for _ in range(5):
            registry.record_outcome("twelvedata_primary", False, 100)

        assert len(registry.get_incidents()) == 3


# ============================================================
# DISABLE / HEALTH TICK
# ============================================================

class TestDisableAndHealthTick:
    """Tests for disabling, restoration and the periodic tick."""

    def test_disable_zeroes_health(self, registry):
        assert registry.disable("binance_crypto") is True

        source = registry.get_source("binance_crypto")
        assert source.health_score == 0
        assert source.is_disabled
        assert registry.disable("missing") is False

    def test_disabled_health_not_changed_by_outcomes(self, registry):
        registry.disable("binance_crypto")

        registry.record_outcome("binance_crypto", True, 100)

        assert registry.get_source("binance_crypto").health_score == 0

    def test_tick_restores_after_duration(self, registry, clock):
        registry.disable("binance_crypto")

        registry.run_health_check()
        assert registry.get_source("binance_crypto").health_score == 0

        clock.advance(301)
        registry.run_health_check()

        source = registry.get_source("binance_crypto")
        assert not source.is_disabled
        assert source.health_score == 50

    @pytest.mark.asyncio
    async def test_timer_restores_after_duration(self, registry):
        registry.disable("binance_crypto", duration_ms=10)

        await asyncio.sleep(0.1)

        source = registry.get_source("binance_crypto")
        assert not source.is_disabled
        assert source.health_score == 50

    def test_tick_resets_rate_limit(self, registry, clock):
        registry.record_rate_limit("binance_crypto", 5)
        assert registry.get_source("binance_crypto").health_score == 78

        clock.advance(3601)
        registry.run_health_check()

        source = registry.get_source("binance_crypto")
        assert source.rate_limit_remaining == 1200
        assert source.health_score == 88.5
        assert source.rate_limit_reset > clock.now()

    def test_tick_drifts_toward_ceiling(self, registry):
        registry.run_health_check()

        assert registry.get_source("cached_data").health_score == 80.5
        assert registry.get_source("twelvedata_primary").health_score == 100

    def test_status_rounds_score(self, registry):
        status = {s["id"]: s for s in registry.get_sources_status()}

        assert status["twelvedata_primary"]["composite_score"] == 84
        assert status["binance_crypto"]["composite_score"] == 92


# ============================================================
# QUEUE
# ============================================================

class TestRequestQueue:
    """Tests for single-flight queue processing."""

    @pytest.mark.asyncio
    async def test_without_handler_resolves_to_source(self, registry):
        future = registry.enqueue(DataRequest(symbol="BTC/USDT"))

        assert await registry.process_next() is True
        assert (await future).id == "binance_crypto"
        assert await registry.process_next() is False

    @pytest.mark.asyncio
    async def test_no_source_resolves_to_none(self, registry):
        for source in registry.list_sources():
            registry.disable(source.id)
        future = registry.enqueue(DataRequest(symbol="EUR/USD"))

        await registry.process_next()

        assert await future is None

    @pytest.mark.asyncio
    async def test_handler_result_and_outcome(self, registry):
        async def handler(request, source):
            return f"{request.symbol}@{source.provider}"

        registry.bind_handler(handler)
        future = registry.enqueue(DataRequest(symbol="BTC/USDT"))

        await registry.process_next()

        assert await future == "BTC/USDT@binance"
        assert registry.get_source("binance_crypto").success_count == 1

    @pytest.mark.asyncio
    async def test_handler_error_propagates_to_caller(self, registry):
        async def handler(request, source):
            raise RuntimeError("upstream down")

        registry.bind_handler(handler)
        future = registry.enqueue(DataRequest(symbol="BTC/USDT"))

        await registry.process_next()

        with pytest.raises(RuntimeError):
            await future
        assert registry.get_source("binance_crypto").error_count == 1

    @pytest.mark.asyncio
    async def test_single_flight(self, registry):
        release = asyncio.Event()
        in_flight = []

        async def handler(request, source):
            in_flight.append(request.symbol)
            await release.wait()
            return request.symbol

        registry.bind_handler(handler)
        first = registry.enqueue(DataRequest(symbol="BTC/USDT"))
        second = registry.enqueue(DataRequest(symbol="EUR/USD"))

        task = asyncio.create_task(registry.process_next())
        while not in_flight:
            await asyncio.sleep(0)

        assert registry.is_processing
        assert await registry.process_next() is False
        assert registry.queue_depth == 1

        release.set()
        await task
        await registry.process_next()

        assert await first == "BTC/USDT"
        assert await second == "EUR/USD"
        assert in_flight == ["BTC/USDT", "EUR/USD"]

    @pytest.mark.asyncio
    async def test_background_processing(self, audit, clock):
        registry = DataSourceRegistry(RegistryConfig(queue_interval_seconds=0.01), audit, clock)
        registry.load_defaults()

        async with registry:
            assert registry.is_running
            source = await asyncio.wait_for(registry.enqueue(DataRequest(symbol="AAPL")), timeout=2)

        assert source.id == "twelvedata_primary"
        assert not registry.is_running

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_requests(self, registry):
        await registry.start()
        future = registry.enqueue(DataRequest(symbol="EUR/USD"))

        await registry.stop()

        assert future.cancelled()
