"""
Data Sources - Configuration.

============================================================
CONFIGURABLE SOURCE SELECTION
============================================================

- Composite score weights
- Selection thresholds
- Health adjustment steps
- Loop intervals
- Static source definitions

Configuration can be loaded from:
- Default values
- Environment variables
- YAML config file

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.exceptions import ConfigurationError
from data_sources.models import ProviderClass, RequestType, SourceType


logger = logging.getLogger(__name__)


# =============================================================
# SCORE WEIGHTS
# =============================================================


@dataclass
class ScoreWeights:
    """
    Weights of the composite score.

    All weights must sum to 1.0.
    """
    health: float = 0.4
    speed: float = 0.3
    reliability: float = 0.2
    priority: float = 0.1

    def __post_init__(self) -> None:
        total = self.total()
        if abs(total - 1.0) > 0.001:
            logger.warning(f"Score weights sum to {total}, normalizing to 1.0")
            self._normalize()

    def total(self) -> float:
        return self.health + self.speed + self.reliability + self.priority

    def _normalize(self) -> None:
        total = self.total()
        if total > 0:
            self.health /= total
            self.speed /= total
            self.reliability /= total
            self.priority /= total

    def to_dict(self) -> Dict[str, float]:
        return {
            "health": self.health,
            "speed": self.speed,
            "reliability": self.reliability,
            "priority": self.priority,
        }


# =============================================================
# SELECTION THRESHOLDS / HEALTH STEPS
# =============================================================


@dataclass
class SelectionThresholds:
    """A source is selectable only above min_health and below max_error_rate."""
    min_health: float = 50.0
    max_error_rate: float = 50.0


@dataclass
class HealthAdjustments:
    """Step sizes applied by outcome recording and the health tick."""
    success_health_gain: float = 1.0
    success_error_decay: float = 0.5
    failure_health_penalty: float = 5.0
    failure_error_gain: float = 2.0

    low_rate_limit_threshold: int = 10
    low_rate_limit_penalty: float = 20.0
    low_rate_limit_floor: float = 20.0

    reset_health_bonus: float = 10.0
    drift_ceiling: float = 90.0
    drift_step: float = 0.5

    disable_duration_ms: int = 300_000
    restore_health: float = 50.0


# =============================================================
# SOURCE DEFINITIONS
# =============================================================


@dataclass
class SourceDefinition:
    """Static registration data of one source."""
    id: str
    name: str
    type: SourceType
    priority: int
    provider: str
    health_score: float = 100.0
    rate_limit: int = 800
    rate_limit_window_seconds: int = 24 * 60 * 60
    response_time: float = 500.0
    error_rate: float = 0.0
    capabilities: List[RequestType] = field(default_factory=lambda: list(RequestType))
    asset_classes: List[ProviderClass] = field(default_factory=lambda: list(ProviderClass))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceDefinition":
        try:
            return cls(
                id=data["id"],
                name=data.get("name", data["id"]),
                type=SourceType(data.get("type", "primary")),
                priority=int(data.get("priority", 1)),
                provider=data["provider"],
                health_score=float(data.get("health_score", 100.0)),
                rate_limit=int(data.get("rate_limit", 800)),
                rate_limit_window_seconds=int(data.get("rate_limit_window_seconds", 24 * 60 * 60)),
                response_time=float(data.get("response_time", 500.0)),
                error_rate=float(data.get("error_rate", 0.0)),
                capabilities=[RequestType(c) for c in data.get("capabilities", [t.value for t in RequestType])],
                asset_classes=[ProviderClass(a) for a in data.get("asset_classes", [p.value for p in ProviderClass])],
            )
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Invalid source definition {data!r}: {e}", config_key="sources", cause=e) from e


DAY = 24 * 60 * 60
HOUR = 60 * 60

ALL_CLASSES = list(ProviderClass)
PRICE_AND_HISTORY = [RequestType.PRICE, RequestType.HISTORICAL]


def default_sources() -> List[SourceDefinition]:
    return [
        SourceDefinition(
            id="twelvedata_primary",
            name="TwelveData Primary",
            type=SourceType.PRIMARY,
            priority=1,
            provider="twelvedata",
            health_score=100,
            rate_limit=800,
            rate_limit_window_seconds=DAY,
            response_time=500,
            error_rate=0,
            capabilities=list(RequestType),
            asset_classes=ALL_CLASSES,
        ),
        SourceDefinition(
            id="twelvedata_secondary",
            name="TwelveData Secondary Keys",
            type=SourceType.SECONDARY,
            priority=2,
            provider="twelvedata",
            health_score=95,
            rate_limit=600,
            rate_limit_window_seconds=DAY,
            response_time=600,
            error_rate=5,
            capabilities=list(RequestType),
            asset_classes=ALL_CLASSES,
        ),
        SourceDefinition(
            id="binance_crypto",
            name="Binance Crypto Data",
            type=SourceType.PRIMARY,
            priority=1,
            provider="binance",
            health_score=98,
            rate_limit=1200,
            rate_limit_window_seconds=HOUR,
            response_time=200,
            error_rate=1,
            capabilities=PRICE_AND_HISTORY,
            asset_classes=[ProviderClass.CRYPTO],
        ),
        SourceDefinition(
            id="alphavantage_equity",
            name="Alpha Vantage Quotes",
            type=SourceType.SECONDARY,
            priority=3,
            provider="alphavantage",
            health_score=90,
            rate_limit=25,
            rate_limit_window_seconds=DAY,
            response_time=800,
            error_rate=2,
            capabilities=PRICE_AND_HISTORY,
            asset_classes=[ProviderClass.EQUITY, ProviderClass.FOREX],
        ),
        SourceDefinition(
            id="cached_data",
            name="Cached Data",
            type=SourceType.FALLBACK,
            priority=10,
            provider="cache",
            health_score=80,
            rate_limit=9999,
            rate_limit_window_seconds=DAY,
            response_time=50,
            error_rate=0,
            capabilities=PRICE_AND_HISTORY,
            asset_classes=[ProviderClass.FOREX, ProviderClass.EQUITY],
        ),
    ]


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class RegistryConfig:
    """Main configuration of the data source registry."""
    weights: ScoreWeights = field(default_factory=ScoreWeights)
    thresholds: SelectionThresholds = field(default_factory=SelectionThresholds)
    adjustments: HealthAdjustments = field(default_factory=HealthAdjustments)

    health_check_interval_seconds: float = 60.0
    queue_interval_seconds: float = 0.1
    max_incidents: int = 1000

    sources: List[SourceDefinition] = field(default_factory=default_sources)

    def __post_init__(self) -> None:
        if self.health_check_interval_seconds <= 0:
            raise ConfigurationError("health_check_interval_seconds must be > 0", config_key="health_check_interval_seconds")
        if self.queue_interval_seconds <= 0:
            raise ConfigurationError("queue_interval_seconds must be > 0", config_key="queue_interval_seconds")
        ids = [s.id for s in self.sources]
        if len(ids) != len(set(ids)):
            raise ConfigurationError(f"Duplicate source ids: {ids}", config_key="sources")

    def get_source(self, source_id: str) -> Optional[SourceDefinition]:
        for source in self.sources:
            if source.id == source_id:
                return source
        return None

    @classmethod
    def from_env(cls) -> "RegistryConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - DATA_SOURCE_HEALTH_INTERVAL
        - DATA_SOURCE_QUEUE_INTERVAL
        - DATA_SOURCE_MIN_HEALTH
        - DATA_SOURCE_MAX_ERROR_RATE
        """
        config = cls()

        if os.getenv("DATA_SOURCE_HEALTH_INTERVAL"):
            config.health_check_interval_seconds = float(os.getenv("DATA_SOURCE_HEALTH_INTERVAL"))
        if os.getenv("DATA_SOURCE_QUEUE_INTERVAL"):
            config.queue_interval_seconds = float(os.getenv("DATA_SOURCE_QUEUE_INTERVAL"))
        if os.getenv("DATA_SOURCE_MIN_HEALTH"):
            config.thresholds.min_health = float(os.getenv("DATA_SOURCE_MIN_HEALTH"))
        if os.getenv("DATA_SOURCE_MAX_ERROR_RATE"):
            config.thresholds.max_error_rate = float(os.getenv("DATA_SOURCE_MAX_ERROR_RATE"))

        config.__post_init__()
        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "RegistryConfig":
        """Load from the `data_sources:` section of a YAML file."""
        import yaml

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            logger.warning(f"Failed to load YAML config from {path}: {e}")
            return cls()

        section = data.get("data_sources", {}) or {}
        config = cls()

        if "weights" in section:
            w = section["weights"]
            config.weights = ScoreWeights(
                health=w.get("health", 0.4),
                speed=w.get("speed", 0.3),
                reliability=w.get("reliability", 0.2),
                priority=w.get("priority", 0.1),
            )
        if "thresholds" in section:
            t = section["thresholds"]
            config.thresholds = SelectionThresholds(
                min_health=t.get("min_health", 50.0),
                max_error_rate=t.get("max_error_rate", 50.0),
            )
        if "health_check_interval_seconds" in section:
            config.health_check_interval_seconds = section["health_check_interval_seconds"]
        if "queue_interval_seconds" in section:
            config.queue_interval_seconds = section["queue_interval_seconds"]
        if "max_incidents" in section:
            config.max_incidents = section["max_incidents"]
        if "sources" in section:
            config.sources = [SourceDefinition.from_dict(s) for s in section["sources"]]

        config.__post_init__()
        return config

    def to_dict(self) -> Dict:
        return {
            "weights": self.weights.to_dict(),
            "min_health": self.thresholds.min_health,
            "max_error_rate": self.thresholds.max_error_rate,
            "health_check_interval_seconds": self.health_check_interval_seconds,
            "queue_interval_seconds": self.queue_interval_seconds,
            "sources": [s.id for s in self.sources],
        }
