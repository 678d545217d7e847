"""
Providers Package - Upstream price adapters and the fallback chain.

Adding New Providers:
    1. Create class extending BaseProviderAdapter
    2. Implement: provider, fetch_price()
    3. Raise RateLimitedError / NetworkFailureError / MalformedResponseError
    4. Map a ProviderClass to it in FallbackConfig.class_providers
"""

from providers.alphavantage import AlphaVantageAdapter
from providers.base import BaseProviderAdapter, PriceQuote
from providers.binance import BinanceAdapter
from providers.fallback import (
    EXHAUSTED,
    FallbackConfig,
    PriceResult,
    ProviderFallbackChain,
    build_adapters,
)
from providers.twelvedata import TwelveDataAdapter


__all__ = [
    "BaseProviderAdapter",
    "PriceQuote",
    "BinanceAdapter",
    "TwelveDataAdapter",
    "AlphaVantageAdapter",
    "FallbackConfig",
    "PriceResult",
    "ProviderFallbackChain",
    "EXHAUSTED",
    "build_adapters",
]
