"""
Tests for provider adapters.

============================================================
PURPOSE
============================================================
Every upstream failure is classified at the adapter boundary.

TEST PRINCIPLES:
- No network access
- Rate limits, network failures and malformed bodies map to
  distinct exception types
- Only positive finite prices are returned

============================================================
"""

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from core.exceptions import MalformedResponseError, NetworkFailureError, RateLimitedError
from providers.alphavantage import AlphaVantageAdapter
from providers.base import PriceQuote
from providers.binance import BinanceAdapter
from providers.fallback import build_adapters
from providers.twelvedata import TwelveDataAdapter


# ============================================================
# FAKE HTTP SESSION
# ============================================================

class FakeResponse:
    def __init__(self, status=200, text="{}", headers=None):
        self.status = status
        self._text = text
        self.headers = headers or {}

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    """Answers every GET with one canned response or exception."""

    def __init__(self, response=None, error=None):
        self.closed = False
        self.calls = []
        self._response = response
        self._error = error

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers})
        if self._error is not None:
            raise self._error
        return self._response


def mocked_request(adapter, body, headers=None):
    return patch.object(adapter, "_request", AsyncMock(return_value=(body, headers or {})))


# ============================================================
# BASE REQUEST
# ============================================================

class TestBaseRequest:
    """Tests for HTTP status and transport classification."""

    @pytest.mark.asyncio
    async def test_http_429_is_rate_limit(self):
        session = FakeSession(FakeResponse(status=429, headers={"Retry-After": "30"}))
        adapter = BinanceAdapter(session=session)

        with pytest.raises(RateLimitedError) as exc_info:
            await adapter.fetch_price("BTC/USDT", "key")

        assert exc_info.value.retry_after_seconds == 30
        assert exc_info.value.is_rate_limited

    @pytest.mark.asyncio
    async def test_http_500_is_network_failure(self):
        adapter = BinanceAdapter(session=FakeSession(FakeResponse(status=503, text="unavailable")))

        with pytest.raises(NetworkFailureError) as exc_info:
            await adapter.fetch_price("BTC/USDT", "key")

        assert exc_info.value.status_code == 503
        assert not exc_info.value.is_rate_limited

    @pytest.mark.asyncio
    async def test_invalid_json_is_malformed(self):
        adapter = BinanceAdapter(session=FakeSession(FakeResponse(text="<html>")))

        with pytest.raises(MalformedResponseError):
            await adapter.fetch_price("BTC/USDT", "key")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        asyncio.TimeoutError(),
        aiohttp.ClientConnectionError("refused"),
    ])
    async def test_transport_errors_are_network_failures(self, error):
        adapter = BinanceAdapter(session=FakeSession(error=error))

        with pytest.raises(NetworkFailureError):
            await adapter.fetch_price("BTC/USDT", "key")

    @pytest.mark.asyncio
    async def test_shared_session_not_closed(self):
        session = FakeSession(FakeResponse())
        adapter = TwelveDataAdapter(session=session)

        await adapter.close()

        assert session.closed is False


# ============================================================
# BINANCE
# ============================================================

class TestBinanceAdapter:
    """Tests for the Binance adapter."""

    def test_format_symbol(self):
        assert BinanceAdapter.format_symbol("btc/usdt") == "BTCUSDT"

    @pytest.mark.asyncio
    async def test_price_and_weight(self):
        session = FakeSession(FakeResponse(
            text='{"symbol": "BTCUSDT", "price": "43250.10"}',
            headers={"X-MBX-USED-WEIGHT-1M": "200"},
        ))
        adapter = BinanceAdapter(session=session)

        quote = await adapter.fetch_price("BTC/USDT", "binance-key")

        assert quote == PriceQuote(value=43250.10, rate_limit_remaining=1000, rate_limit_window_seconds=60)
        assert session.calls[0]["params"] == {"symbol": "BTCUSDT"}
        assert session.calls[0]["headers"] == {"X-MBX-APIKEY": "binance-key"}

    @pytest.mark.asyncio
    async def test_missing_price(self):
        adapter = BinanceAdapter()

        with mocked_request(adapter, {"code": -1121, "msg": "Invalid symbol."}):
            with pytest.raises(MalformedResponseError):
                await adapter.fetch_price("FOO/BAR", "key")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", ["0", "-1", "nan", "abc", None])
    async def test_unusable_price(self, price):
        adapter = BinanceAdapter()

        with mocked_request(adapter, {"price": price}):
            with pytest.raises(MalformedResponseError):
                await adapter.fetch_price("BTC/USDT", "key")


# ============================================================
# TWELVEDATA
# ============================================================

class TestTwelveDataAdapter:
    """Tests for the TwelveData adapter."""

    @pytest.mark.asyncio
    async def test_price_and_credits(self):
        adapter = TwelveDataAdapter()

        with mocked_request(adapter, {"price": "1.08765"}, {"api-credits-left": "42"}) as request:
            quote = await adapter.fetch_price("EUR/USD", "td-key")

        assert quote.value == 1.08765
        assert quote.rate_limit_remaining == 42
        assert quote.rate_limit_window_seconds == 60
        assert request.await_args.kwargs["params"] == {"symbol": "EUR/USD", "apikey": "td-key"}

    @pytest.mark.asyncio
    async def test_credit_error_is_rate_limit(self):
        adapter = TwelveDataAdapter()
        body = {"code": 429, "status": "error", "message": "You have run out of API credits"}

        with mocked_request(adapter, body):
            with pytest.raises(RateLimitedError):
                await adapter.fetch_price("EUR/USD", "td-key")

    @pytest.mark.asyncio
    async def test_other_error_is_network_failure(self):
        adapter = TwelveDataAdapter()
        body = {"code": 401, "status": "error", "message": "Invalid API key"}

        with mocked_request(adapter, body):
            with pytest.raises(NetworkFailureError) as exc_info:
                await adapter.fetch_price("EUR/USD", "td-key")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_price(self):
        adapter = TwelveDataAdapter()

        with mocked_request(adapter, {"symbol": "EUR/USD"}):
            with pytest.raises(MalformedResponseError):
                await adapter.fetch_price("EUR/USD", "td-key")


# ============================================================
# ALPHA VANTAGE
# ============================================================

class TestAlphaVantageAdapter:
    """Tests for the Alpha Vantage adapter."""

    @pytest.mark.asyncio
    async def test_global_quote(self):
        adapter = AlphaVantageAdapter()
        body = {"Global Quote": {"01. symbol": "AAPL", "05. price": "189.2500"}}

        with mocked_request(adapter, body):
            quote = await adapter.fetch_price("AAPL", "av-key")

        assert quote.value == 189.25
        assert quote.rate_limit_remaining is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {},
        {"Note": "Thank you for using Alpha Vantage! Our standard API call frequency is 5 calls per minute"},
        {"Information": "Daily rate limit reached"},
    ])
    async def test_limit_messages_are_rate_limits(self, body):
        adapter = AlphaVantageAdapter()

        with mocked_request(adapter, body):
            with pytest.raises(RateLimitedError):
                await adapter.fetch_price("AAPL", "av-key")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"Global Quote": {}},
        {"Error Message": "Invalid API call"},
        ["not", "an", "object"],
    ])
    async def test_missing_quote_is_malformed(self, body):
        adapter = AlphaVantageAdapter()

        with mocked_request(adapter, body):
            with pytest.raises(MalformedResponseError):
                await adapter.fetch_price("AAPL", "av-key")


class TestBuildAdapters:
    """Tests for the default adapter set."""

    def test_one_adapter_per_provider(self):
        adapters = build_adapters(timeout=2.0)

        assert set(adapters) == {"binance", "twelvedata", "alphavantage"}
        assert isinstance(adapters["twelvedata"], TwelveDataAdapter)
