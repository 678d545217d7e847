"""
Binance Price Adapter - Spot ticker price.

Endpoint:
- /api/v3/ticker/price?symbol=BTCUSDT

Rate limits:
- 1200 request weight per minute, IP-based
- used weight is reported in X-MBX-USED-WEIGHT-1M
"""

import logging
from typing import Optional

import aiohttp

from core.exceptions import MalformedResponseError
from providers.base import BaseProviderAdapter, PriceQuote


logger = logging.getLogger(__name__)


class BinanceAdapter(BaseProviderAdapter):
    """Crypto prices from the Binance spot API."""

    BASE_URL = "https://api.binance.com"
    WEIGHT_LIMIT = 1200
    WEIGHT_WINDOW_SECONDS = 60

    def __init__(
        self,
        timeout: float = BaseProviderAdapter.DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
    ) -> None:
        super().__init__(timeout, session, base_url or self.BASE_URL)

    @property
    def provider(self) -> str:
        return "binance"

    @staticmethod
    def format_symbol(symbol: str) -> str:
        """BTC/USDT -> BTCUSDT"""
        return symbol.replace("/", "").upper()

    async def fetch_price(self, symbol: str, key: str) -> PriceQuote:
        data, headers = await self._request(
            f"{self._base_url}/api/v3/ticker/price",
            params={"symbol": self.format_symbol(symbol)},
            headers={"X-MBX-APIKEY": key},
        )

        if not isinstance(data, dict) or "price" not in data:
            raise MalformedResponseError(
                "Binance response has no price",
                body=data,
                provider=self.provider,
            )

        remaining = None
        used_weight = headers.get("X-MBX-USED-WEIGHT-1M") if headers else None
        if used_weight and used_weight.isdigit():
            remaining = max(0, self.WEIGHT_LIMIT - int(used_weight))

        return PriceQuote(
            value=self._parse_price(data["price"], data),
            rate_limit_remaining=remaining,
            rate_limit_window_seconds=self.WEIGHT_WINDOW_SECONDS if remaining is not None else None,
        )
