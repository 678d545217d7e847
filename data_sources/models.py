"""
Data Source Models - In-memory state of upstream data sources.

A DataSource is one named integration with a provider (several
sources may speak for the same provider). Its health, latency,
error rate and rate-limit counters are mutated only from the event
loop by the registry.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, FrozenSet, Optional

from core.clock import to_iso8601


class SourceType(Enum):
    """Role of a data source."""
    PRIMARY = "primary"
    SECONDARY = "secondary"
    FALLBACK = "fallback"


class RequestType(Enum):
    """Shape of a data request."""
    PRICE = "price"
    INDICATORS = "indicators"
    HISTORICAL = "historical"


class ProviderClass(Enum):
    """Category of upstream API appropriate to a symbol."""
    CRYPTO = "crypto"
    FOREX = "forex"
    EQUITY = "equity"


CRYPTO_TOKENS = ("BTC", "ETH", "USDT", "USDC", "BNB", "XRP", "DOGE")


def classify_symbol(symbol: str) -> ProviderClass:
    """
    Provider class of a trading symbol.

    - contains a known crypto token -> CRYPTO
    - contains "/"                  -> FOREX
    - otherwise                      -> EQUITY
    """
    upper = (symbol or "").upper()
    if any(token in upper for token in CRYPTO_TOKENS):
        return ProviderClass.CRYPTO
    if "/" in upper:
        return ProviderClass.FOREX
    return ProviderClass.EQUITY


@dataclass
class DataSource:
    """Live quality signals for one data source."""
    id: str
    name: str
    type: SourceType
    priority: int
    provider: str
    health_score: float = 100.0
    response_time: float = 500.0  # ms, moving average
    error_rate: float = 0.0  # percent
    rate_limit_remaining: int = 0
    rate_limit_reset: Optional[datetime] = None
    success_count: int = 0
    error_count: int = 0
    last_check: Optional[datetime] = None

    capabilities: FrozenSet[RequestType] = frozenset(RequestType)
    asset_classes: FrozenSet[ProviderClass] = frozenset(ProviderClass)
    default_rate_limit: int = 0
    rate_limit_window_seconds: int = 24 * 60 * 60
    disabled_until: Optional[datetime] = None

    @property
    def is_disabled(self) -> bool:
        return self.disabled_until is not None

    def supports(self, request: "DataRequest") -> bool:
        return (
            request.type in self.capabilities
            and classify_symbol(request.symbol) in self.asset_classes
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "provider": self.provider,
            "priority": self.priority,
            "health_score": self.health_score,
            "response_time": self.response_time,
            "error_rate": self.error_rate,
            "rate_limit_remaining": self.rate_limit_remaining,
            "rate_limit_reset": to_iso8601(self.rate_limit_reset),
            "success_count": self.success_count,
            "error_count": self.error_count,
            "last_check": to_iso8601(self.last_check),
            "disabled_until": to_iso8601(self.disabled_until),
        }


@dataclass
class DataRequest:
    """Ephemeral routing request; queued, processed once, discarded."""
    symbol: str
    type: RequestType = RequestType.PRICE
    timeframe: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if isinstance(self.type, str):
            self.type = RequestType(self.type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "type": self.type.value,
            "timeframe": self.timeframe,
            "request_id": self.request_id,
        }


@dataclass
class SourceIncident:
    """Record of a data source incident."""
    source_id: str
    incident_type: str
    timestamp: datetime
    message: str
    request: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "source_id": self.source_id,
            "incident_type": self.incident_type,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "request": self.request,
        }
