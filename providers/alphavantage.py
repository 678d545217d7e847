"""
Alpha Vantage Price Adapter - GLOBAL_QUOTE.

Alpha Vantage answers 200 even when a key is spent. A "Note" or
"Information" message, or an empty JSON object, means the key hit
its frequency or daily limit.
"""

import logging
from typing import Optional

import aiohttp

from core.exceptions import MalformedResponseError, RateLimitedError
from providers.base import BaseProviderAdapter, PriceQuote


logger = logging.getLogger(__name__)


class AlphaVantageAdapter(BaseProviderAdapter):
    """Equity quotes from Alpha Vantage."""

    BASE_URL = "https://www.alphavantage.co"

    def __init__(
        self,
        timeout: float = BaseProviderAdapter.DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
    ) -> None:
        super().__init__(timeout, session, base_url or self.BASE_URL)

    @property
    def provider(self) -> str:
        return "alphavantage"

    async def fetch_price(self, symbol: str, key: str) -> PriceQuote:
        data, _ = await self._request(
            f"{self._base_url}/query",
            params={"function": "GLOBAL_QUOTE", "symbol": symbol, "apikey": key},
        )

        if not isinstance(data, dict):
            raise MalformedResponseError("Alpha Vantage response is not an object", body=data, provider=self.provider)

        if not data:
            raise RateLimitedError("Empty response, daily limit likely reached", provider=self.provider, status_code=None)

        for field in ("Note", "Information"):
            if field in data:
                raise RateLimitedError(
                    f"API credits exceeded: {data[field]}",
                    provider=self.provider,
                    status_code=None,
                )

        quote = data.get("Global Quote") or {}
        if "05. price" not in quote:
            raise MalformedResponseError(
                f"No quote for {symbol}",
                body=data,
                provider=self.provider,
            )

        return PriceQuote(value=self._parse_price(quote["05. price"], data))
