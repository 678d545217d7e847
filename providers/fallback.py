"""
Provider Fallback Chain.

============================================================
PURPOSE
============================================================
Produce a price for a symbol by trying providers in order until
one succeeds:

1. The provider class of the symbol (crypto -> binance,
   forex pair -> twelvedata, everything else -> alphavantage)
2. The remaining providers of the fixed order, each at most once

Every provider gets a bounded number of attempts with a fixed
delay between them. Each attempt leases a key from the key
manager (rotating through the provider's key group when the pool
is empty), calls the adapter under a fixed timeout, and reports
the outcome to the data source registry.

============================================================
FAILURE MODEL
============================================================
Upstream failures never propagate. When every provider is
exhausted the result carries error="all sources exhausted".

============================================================
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from core.audit import AuditSink, safe_record
from core.clock import ClockFactory, ClockProtocol
from core.exceptions import ConfigurationError, NetworkFailureError, UpstreamError
from data_sources.models import ProviderClass, classify_symbol
from data_sources.registry import DataSourceRegistry
from key_management.manager import KeyManager
from key_management.models import KeyLease
from key_management.rotation import KeyGroupRotator
from providers.base import BaseProviderAdapter, PriceQuote


logger = logging.getLogger(__name__)


AUDIT_SOURCE = "provider_fallback"
EXHAUSTED = "all sources exhausted"


def _default_class_providers() -> Dict[ProviderClass, str]:
    return {
        ProviderClass.CRYPTO: "binance",
        ProviderClass.FOREX: "twelvedata",
        ProviderClass.EQUITY: "alphavantage",
    }


@dataclass
class FallbackConfig:
    """Settings of the fallback chain."""
    request_timeout_seconds: float = 5.0
    max_attempts: int = 3
    retry_delay_seconds: float = 1.0
    rate_limit_backoff_seconds: int = 24 * 60 * 60

    provider_order: List[ProviderClass] = field(
        default_factory=lambda: [ProviderClass.CRYPTO, ProviderClass.FOREX, ProviderClass.EQUITY]
    )
    class_providers: Dict[ProviderClass, str] = field(default_factory=_default_class_providers)

    def __post_init__(self) -> None:
        if self.request_timeout_seconds <= 0:
            raise ConfigurationError("request_timeout_seconds must be > 0", config_key="request_timeout_seconds")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1", config_key="max_attempts")
        if self.retry_delay_seconds < 0:
            raise ConfigurationError("retry_delay_seconds must be >= 0", config_key="retry_delay_seconds")
        missing = [c.value for c in self.provider_order if c not in self.class_providers]
        if missing:
            raise ConfigurationError(f"No provider for classes {missing}", config_key="class_providers")

    @property
    def ordered_providers(self) -> List[str]:
        providers: List[str] = []
        for provider_class in self.provider_order:
            provider = self.class_providers[provider_class]
            if provider not in providers:
                providers.append(provider)
        return providers

    @classmethod
    def from_env(cls) -> "FallbackConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - PROVIDER_REQUEST_TIMEOUT
        - PROVIDER_MAX_ATTEMPTS
        - PROVIDER_RETRY_DELAY
        - PROVIDER_RATE_LIMIT_BACKOFF
        """
        kwargs: Dict[str, Any] = {}
        if os.getenv("PROVIDER_REQUEST_TIMEOUT"):
            kwargs["request_timeout_seconds"] = float(os.getenv("PROVIDER_REQUEST_TIMEOUT"))
        if os.getenv("PROVIDER_MAX_ATTEMPTS"):
            kwargs["max_attempts"] = int(os.getenv("PROVIDER_MAX_ATTEMPTS"))
        if os.getenv("PROVIDER_RETRY_DELAY"):
            kwargs["retry_delay_seconds"] = float(os.getenv("PROVIDER_RETRY_DELAY"))
        if os.getenv("PROVIDER_RATE_LIMIT_BACKOFF"):
            kwargs["rate_limit_backoff_seconds"] = int(os.getenv("PROVIDER_RATE_LIMIT_BACKOFF"))
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Path) -> "FallbackConfig":
        """Load from the `providers:` section of a YAML file."""
        import yaml

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            logger.warning(f"Failed to load YAML config from {path}: {e}")
            return cls()

        section = data.get("providers", {}) or {}
        kwargs: Dict[str, Any] = {}
        for key in ("request_timeout_seconds", "max_attempts", "retry_delay_seconds", "rate_limit_backoff_seconds"):
            if key in section:
                kwargs[key] = section[key]
        try:
            if "provider_order" in section:
                kwargs["provider_order"] = [ProviderClass(c) for c in section["provider_order"]]
            if "class_providers" in section:
                providers = _default_class_providers()
                providers.update({ProviderClass(k): v for k, v in section["class_providers"].items()})
                kwargs["class_providers"] = providers
        except ValueError as e:
            raise ConfigurationError(f"Invalid provider class in {path}: {e}", config_key="provider_order", cause=e) from e
        return cls(**kwargs)


@dataclass
class PriceResult:
    """Outcome of one fetch(): a value with its source, or an error."""
    value: Optional[float] = None
    source: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    attempted_providers: List[str] = field(default_factory=list)
    last_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None and self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "source": self.source,
            "error": self.error,
            "attempts": self.attempts,
            "attempted_providers": list(self.attempted_providers),
            "last_error": self.last_error,
        }


class ProviderFallbackChain:
    """
    Ordered, bounded retry across independent price providers.

    Usage:
        chain = ProviderFallbackChain(key_manager, registry, adapters, rotators)
        result = await chain.fetch("EUR/USD")
        if result.ok:
            print(result.value, result.source)
    """

    def __init__(
        self,
        key_manager: KeyManager,
        registry: Optional[DataSourceRegistry],
        adapters: Mapping[str, BaseProviderAdapter],
        rotators: Optional[Mapping[str, KeyGroupRotator]] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[ClockProtocol] = None,
        config: Optional[FallbackConfig] = None,
    ) -> None:
        self._key_manager = key_manager
        self._registry = registry
        self._adapters = dict(adapters)
        self._rotators = dict(rotators or {})
        self._audit = audit_sink
        self._clock = clock or ClockFactory.get_clock()
        self._config = config or FallbackConfig()

    @property
    def config(self) -> FallbackConfig:
        return self._config

    # =========================================================
    # ROUTING
    # =========================================================

    def classify_provider(self, symbol: str) -> ProviderClass:
        return classify_symbol(symbol)

    def provider_order_for(self, symbol: str, preferred_provider: Optional[str] = None) -> List[str]:
        """Providers to try for a symbol, first choice first, no repeats."""
        ordered = self._config.ordered_providers
        first = preferred_provider if preferred_provider in ordered else None
        if first is None:
            first = self._config.class_providers[self.classify_provider(symbol)]
        return [first] + [p for p in ordered if p != first]

    # =========================================================
    # FETCH
    # =========================================================

    async def fetch(
        self,
        symbol: str,
        preferred_provider: Optional[str] = None,
        report: bool = True,
        fallback: bool = True,
    ) -> PriceResult:
        """
        Current price of a symbol from the first provider that answers.

        Args:
            symbol: Trading symbol (BTC/USDT, EUR/USD, AAPL)
            preferred_provider: Provider to try first instead of the classified one
            report: Feed attempt outcomes into the registry
            fallback: Try the remaining providers when the first one fails.
                Without it only the first provider is asked, and
                preferred_provider is used as given.
        """
        if not symbol or not symbol.strip():
            logger.warning("fetch called with an empty symbol")
            return PriceResult(error="symbol is required")

        symbol = symbol.strip()
        if fallback:
            providers = self.provider_order_for(symbol, preferred_provider)
        else:
            providers = [preferred_provider or self._config.class_providers[self.classify_provider(symbol)]]
        result = PriceResult()

        logger.info(f"Fetching price for {symbol}, provider order {providers}")

        for position, provider in enumerate(providers):
            adapter = self._adapters.get(provider)
            if adapter is None:
                logger.debug(f"No adapter for {provider}, skipping")
                continue

            result.attempted_providers.append(provider)
            quote = await self._try_provider(provider, adapter, symbol, result, report)
            if quote is None:
                continue

            result.value = quote.value
            result.source = provider
            if position > 0:
                logger.warning(f"Price for {symbol} served by fallback provider {provider}")
                safe_record(
                    self._audit, "warning", AUDIT_SOURCE, f"Fallback to {provider} for {symbol}",
                    {"symbol": symbol, "provider": provider, "attempted": list(result.attempted_providers)},
                )
            logger.info(f"Got price for {symbol} from {provider}: {quote.value}")
            return result

        result.error = EXHAUSTED
        logger.error(f"All providers failed for {symbol}: {result.attempted_providers} ({result.last_error})")
        safe_record(self._audit, "error", AUDIT_SOURCE, f"All sources exhausted for {symbol}", result.to_dict())
        return result

    async def fetch_many(self, symbols: Sequence[str]) -> Dict[str, PriceResult]:
        """Fetch several symbols concurrently."""
        results = await asyncio.gather(*(self.fetch(s) for s in symbols))
        return dict(zip(symbols, results))

    async def _try_provider(
        self,
        provider: str,
        adapter: BaseProviderAdapter,
        symbol: str,
        result: PriceResult,
        report: bool,
    ) -> Optional[PriceQuote]:
        max_attempts = self._config.max_attempts

        for attempt in range(max_attempts):
            lease = await self._lease(provider)
            if not lease.found:
                result.last_error = f"no API key available for {provider}"
                logger.warning(f"No API key available for {provider}, skipping provider")
                safe_record(
                    self._audit, "warning", AUDIT_SOURCE, f"No key for {provider}",
                    {"provider": provider, "symbol": symbol},
                )
                return None

            result.attempts += 1
            started = self._clock.monotonic()
            try:
                quote = await asyncio.wait_for(
                    adapter.fetch_price(symbol, lease.key),
                    timeout=self._config.request_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                error: Exception = NetworkFailureError(
                    f"Timed out after {self._config.request_timeout_seconds}s",
                    provider=provider,
                    cause=e,
                )
            except UpstreamError as e:
                error = e
            except Exception as e:
                logger.error(f"Unexpected error from {provider} adapter: {e}")
                error = e
            else:
                latency_ms = (self._clock.monotonic() - started) * 1000
                self._report(provider, True, latency_ms, report, quote)
                return quote

            latency_ms = (self._clock.monotonic() - started) * 1000
            self._report(provider, False, latency_ms, report)
            result.last_error = f"{provider}: {error}"

            if isinstance(error, UpstreamError) and error.is_rate_limited:
                await self._handle_rate_limit(provider, lease)

            logger.warning(f"{provider} attempt {attempt + 1}/{max_attempts} for {symbol} failed: {error}")
            safe_record(
                self._audit, "warning", AUDIT_SOURCE, f"{provider} attempt failed",
                {
                    "provider": provider,
                    "symbol": symbol,
                    "attempt": attempt + 1,
                    "error": type(error).__name__,
                    "latency_ms": round(latency_ms, 1),
                },
            )

            if attempt < max_attempts - 1 and self._config.retry_delay_seconds > 0:
                await asyncio.sleep(self._config.retry_delay_seconds)

        return None

    # =========================================================
    # KEYS
    # =========================================================

    async def _lease(self, provider: str) -> KeyLease:
        return await self._key_manager.get_key_for_provider(provider, rotator=self._rotators.get(provider))

    async def _handle_rate_limit(self, provider: str, lease: KeyLease) -> None:
        if lease.from_database:
            await self._key_manager.mark_key_failed(lease.key_id, self._config.rate_limit_backoff_seconds)
            return
        rotator = self._rotators.get(provider)
        if rotator is not None and lease.key_name:
            rotator.mark_failed(lease.key_name)

    # =========================================================
    # REGISTRY
    # =========================================================

    def _report(
        self,
        provider: str,
        success: bool,
        latency_ms: float,
        report: bool,
        quote: Optional[PriceQuote] = None,
    ) -> None:
        if not report or self._registry is None:
            return
        source = self._registry.source_for_provider(provider)
        if source is None:
            return
        self._registry.record_outcome(source.id, success, latency_ms)
        if quote is None or quote.rate_limit_remaining is None:
            return

        # A per-minute allowance says nothing about a daily one
        window = quote.rate_limit_window_seconds
        if window is not None and window != source.rate_limit_window_seconds:
            logger.debug(
                f"{provider} reported {quote.rate_limit_remaining} left per {window}s, "
                f"{source.id} tracks a {source.rate_limit_window_seconds}s allowance; not recorded"
            )
            return
        self._registry.record_rate_limit(source.id, quote.rate_limit_remaining, quote.rate_limit_reset)


def build_adapters(
    timeout: float = BaseProviderAdapter.DEFAULT_TIMEOUT,
    session: Optional[Any] = None,
) -> Dict[str, BaseProviderAdapter]:
    """Default adapter per provider, sharing one HTTP session if given."""
    from providers.alphavantage import AlphaVantageAdapter
    from providers.binance import BinanceAdapter
    from providers.twelvedata import TwelveDataAdapter

    adapters: Tuple[BaseProviderAdapter, ...] = (
        BinanceAdapter(timeout=timeout, session=session),
        TwelveDataAdapter(timeout=timeout, session=session),
        AlphaVantageAdapter(timeout=timeout, session=session),
    )
    return {adapter.provider: adapter for adapter in adapters}
