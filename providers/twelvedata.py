"""
TwelveData Price Adapter.

Endpoint:
- /price?symbol=EUR/USD&apikey=...

TwelveData reports errors inside a 200 response as
{"code": 429, "status": "error", "message": "..."}; code 429 is a
spent key, any other code is treated as a failed call. Credits left
in the current minute arrive in the api-credits-left header.
"""

import logging
from typing import Optional

import aiohttp

from core.exceptions import MalformedResponseError, NetworkFailureError, RateLimitedError
from providers.base import BaseProviderAdapter, PriceQuote


logger = logging.getLogger(__name__)


class TwelveDataAdapter(BaseProviderAdapter):
    """Forex and multi-asset prices from TwelveData."""

    BASE_URL = "https://api.twelvedata.com"
    CREDITS_WINDOW_SECONDS = 60

    def __init__(
        self,
        timeout: float = BaseProviderAdapter.DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
    ) -> None:
        super().__init__(timeout, session, base_url or self.BASE_URL)

    @property
    def provider(self) -> str:
        return "twelvedata"

    async def fetch_price(self, symbol: str, key: str) -> PriceQuote:
        data, headers = await self._request(
            f"{self._base_url}/price",
            params={"symbol": symbol, "apikey": key},
        )

        if isinstance(data, dict) and (
            data.get("status") == "error" or ("code" in data and "price" not in data)
        ):
            code = data.get("code")
            message = data.get("message", "unknown error")
            if code == 429:
                raise RateLimitedError(
                    f"API credits exceeded: {message}",
                    provider=self.provider,
                    status_code=429,
                )
            raise NetworkFailureError(
                f"TwelveData error {code}: {message}",
                provider=self.provider,
                status_code=code if isinstance(code, int) else None,
            )

        if not isinstance(data, dict) or "price" not in data:
            raise MalformedResponseError(
                "TwelveData response has no price",
                body=data,
                provider=self.provider,
            )

        remaining = None
        credits_left = headers.get("api-credits-left") if headers else None
        if credits_left is not None and str(credits_left).isdigit():
            remaining = int(credits_left)

        return PriceQuote(
            value=self._parse_price(data["price"], data),
            rate_limit_remaining=remaining,
            rate_limit_window_seconds=self.CREDITS_WINDOW_SECONDS if remaining is not None else None,
        )
