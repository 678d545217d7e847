"""
Data Sources Package - Live health registry of market data sources.

Features:
- Composite-score source selection (health, speed, reliability, priority)
- Adaptive health from recorded outcomes and rate-limit signals
- Temporary disabling with timed partial restoration
- Background health tick and single-flight request queue
- No downstream dependency on specific providers

Quick Start:
    from data_sources import DataSourceRegistry, DataRequest, RequestType

    async def route():
        registry = DataSourceRegistry()
        registry.load_defaults()

        async with registry:
            source = registry.select_source(DataRequest(symbol="EUR/USD", type=RequestType.PRICE))
            if source is not None:
                ...
                registry.record_outcome(source.id, success=True, latency_ms=250)
"""

from data_sources.config import (
    HealthAdjustments,
    RegistryConfig,
    ScoreWeights,
    SelectionThresholds,
    SourceDefinition,
    default_sources,
)
from data_sources.models import (
    CRYPTO_TOKENS,
    DataRequest,
    DataSource,
    ProviderClass,
    RequestType,
    SourceIncident,
    SourceType,
    classify_symbol,
)
from data_sources.queue import RequestQueue
from data_sources.registry import DataSourceRegistry
from data_sources.scoring import composite_score, is_selectable


__all__ = [
    # Models
    "DataSource",
    "DataRequest",
    "SourceIncident",
    "SourceType",
    "RequestType",
    "ProviderClass",
    "CRYPTO_TOKENS",
    "classify_symbol",

    # Config
    "RegistryConfig",
    "ScoreWeights",
    "SelectionThresholds",
    "HealthAdjustments",
    "SourceDefinition",
    "default_sources",

    # Scoring
    "composite_score",
    "is_selectable",

    # Registry
    "RequestQueue",
    "DataSourceRegistry",
]
