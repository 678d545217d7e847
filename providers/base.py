"""
Base Provider Adapter - Abstract interface for upstream price APIs.

Adapters are thin: they extract a price from one provider's
response and classify every failure at the boundary as one of

- RateLimitedError      (key or quota exhausted)
- NetworkFailureError   (connection error, timeout, non-2xx)
- MalformedResponseError (no usable price in the body)

so callers branch on the exception type, never on message text.
"""

import asyncio
import json
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Tuple

import aiohttp

from core.exceptions import MalformedResponseError, NetworkFailureError, RateLimitedError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    """Price extracted from one upstream response.

    rate_limit_window_seconds is the period the remaining allowance
    refers to, when the provider reports one.
    """
    value: float
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset: Optional[datetime] = None
    rate_limit_window_seconds: Optional[int] = None


class BaseProviderAdapter(ABC):
    """
    Abstract base class for upstream price providers.

    Each adapter must:
    1. Name its provider (matches ApiKey.provider)
    2. Implement fetch_price() - one HTTP call, one PriceQuote

    The HTTP session is shared when one is passed in; otherwise the
    adapter creates and owns its own.
    """

    DEFAULT_TIMEOUT = 5.0

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._base_url = base_url

    @property
    @abstractmethod
    def provider(self) -> str:
        """Provider name (twelvedata, alphavantage, binance, ...)."""
        pass

    @abstractmethod
    async def fetch_price(self, symbol: str, key: str) -> PriceQuote:
        """
        Fetch the current price of a symbol.

        Raises:
            RateLimitedError, NetworkFailureError, MalformedResponseError
        """
        pass

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers=self._get_default_headers(),
            )
            self._owns_session = True
        return self._session

    def _get_default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": "MarketDataLayer/1.0",
        }

    async def _request(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Tuple[Any, Mapping[str, str]]:
        """
        GET a JSON document.

        Returns:
            (decoded body, response headers)
        """
        session = await self._get_session()
        try:
            async with session.get(
                url,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as response:
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise RateLimitedError(
                        "Rate limit exceeded",
                        provider=self.provider,
                        retry_after_seconds=int(retry_after) if retry_after and retry_after.isdigit() else None,
                    )

                if response.status >= 400:
                    body = await response.text()
                    raise NetworkFailureError(
                        f"HTTP {response.status}: {body[:200]}",
                        provider=self.provider,
                        status_code=response.status,
                    )

                text = await response.text()
                try:
                    data = json.loads(text) if text.strip() else {}
                except ValueError as e:
                    raise MalformedResponseError(
                        f"Invalid JSON from {self.provider}",
                        body=text,
                        provider=self.provider,
                        status_code=response.status,
                        cause=e,
                    ) from e
                return data, response.headers

        except asyncio.TimeoutError as e:
            raise NetworkFailureError(
                f"Timed out after {self._timeout}s",
                provider=self.provider,
                cause=e,
            ) from e
        except aiohttp.ClientError as e:
            raise NetworkFailureError(
                f"Connection error: {e}",
                provider=self.provider,
                cause=e,
            ) from e

    def _parse_price(self, value: Any, body: Any) -> float:
        """Positive finite float, or MalformedResponseError."""
        try:
            price = float(value)
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(
                f"No usable price in {self.provider} response",
                body=body,
                provider=self.provider,
                cause=e,
            ) from e
        if not math.isfinite(price) or price <= 0:
            raise MalformedResponseError(
                f"Invalid price {value!r} from {self.provider}",
                body=body,
                provider=self.provider,
            )
        return price

    async def close(self) -> None:
        """Close resources."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "BaseProviderAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(provider={self.provider})>"
