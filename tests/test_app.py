"""
Tests for application wiring and the CLI.

============================================================
PURPOSE
============================================================
End-to-end paths through the assembled services with fake
adapters and a temporary SQLite database.

============================================================
"""

from unittest.mock import AsyncMock

import pytest

from app import AppConfig, MarketDataApplication, create_parser, main
from core.exceptions import ExhaustionError, NetworkFailureError
from data_sources.models import DataRequest
from providers.base import PriceQuote
from providers.fallback import FallbackConfig
from storage.database import DatabaseConfig


def make_config(tmp_path):
    return AppConfig(
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}"),
        fallback=FallbackConfig(retry_delay_seconds=0),
    )


def quote_adapter(value):
    adapter = AsyncMock()
    adapter.fetch_price = AsyncMock(return_value=PriceQuote(value=value))
    return adapter


class TestMarketDataApplication:
    """Tests for the assembled application."""

    @pytest.mark.asyncio
    async def test_price_from_pool_key(self, tmp_path, audit, clock):
        adapter = quote_adapter(43000.0)
        app = MarketDataApplication(make_config(tmp_path), clock, audit, adapters={"binance": adapter})
        await app.init(start_background=False)
        try:
            await app.key_manager.register_key("binance-pool-key", "binance", name="BINANCE_1")

            result = await app.get_price("BTC/USDT")

            assert result.ok
            assert result.source == "binance"
            adapter.fetch_price.assert_awaited_once_with("BTC/USDT", "binance-pool-key")
            assert app.registry.get_source("binance_crypto").success_count == 1
        finally:
            await app.shutdown()

    @pytest.mark.asyncio
    async def test_queued_request_goes_through_chain(self, tmp_path, audit, clock):
        adapter = quote_adapter(1.0875)
        app = MarketDataApplication(make_config(tmp_path), clock, audit, adapters={"twelvedata": adapter})
        await app.init(start_background=False)
        try:
            await app.key_manager.register_key("twelvedata-pool-key", "twelvedata")

            future = app.registry.enqueue(DataRequest(symbol="EUR/USD"))
            await app.registry.process_next()
            result = await future

            assert result.value == 1.0875
            assert result.source == "twelvedata"
            assert app.registry.get_source("twelvedata_primary").success_count == 1
        finally:
            await app.shutdown()

    @pytest.mark.asyncio
    async def test_queued_request_exhausted(self, tmp_path, audit, clock, monkeypatch):
        monkeypatch.delenv("TWELVEDATA_API_KEY", raising=False)
        adapter = AsyncMock()
        adapter.fetch_price = AsyncMock(side_effect=NetworkFailureError("down", provider="twelvedata"))
        app = MarketDataApplication(make_config(tmp_path), clock, audit, adapters={"twelvedata": adapter})
        await app.init(start_background=False)
        try:
            await app.key_manager.register_key("twelvedata-pool-key", "twelvedata")

            future = app.registry.enqueue(DataRequest(symbol="EUR/USD"))
            await app.registry.process_next()

            with pytest.raises(ExhaustionError):
                await future
            source = app.registry.get_source("twelvedata_primary")
            assert source.error_count == 1
        finally:
            await app.shutdown()

    @pytest.mark.asyncio
    async def test_queued_request_stays_on_selected_provider(self, tmp_path, audit, clock, monkeypatch):
        """Another provider never serves a request the registry routed elsewhere."""
        monkeypatch.delenv("TWELVEDATA_API_KEY", raising=False)
        twelvedata = AsyncMock()
        twelvedata.fetch_price = AsyncMock(side_effect=NetworkFailureError("down", provider="twelvedata"))
        binance = quote_adapter(1.0875)
        adapters = {"twelvedata": twelvedata, "binance": binance}
        app = MarketDataApplication(make_config(tmp_path), clock, audit, adapters=adapters)
        await app.init(start_background=False)
        try:
            await app.key_manager.register_key("twelvedata-pool-key", "twelvedata")
            await app.key_manager.register_key("binance-pool-key", "binance")

            future = app.registry.enqueue(DataRequest(symbol="EUR/USD"))
            await app.registry.process_next()

            with pytest.raises(ExhaustionError):
                await future
            binance.fetch_price.assert_not_awaited()
            assert app.registry.get_source("twelvedata_primary").error_count == 1
            assert app.registry.get_source("binance_crypto").success_count == 0
        finally:
            await app.shutdown()

    @pytest.mark.asyncio
    async def test_status(self, tmp_path, audit, clock):
        app = MarketDataApplication(make_config(tmp_path), clock, audit, adapters={})
        await app.init(start_background=False)
        try:
            created = await app.key_manager.register_key("alphavantage-secret", "alphavantage")

            status = await app.status()

            assert status["keys"][0]["key"] == created.masked_key
            assert status["usage"]["alphavantage"]["daily_quota"] == 25
            assert len(status["sources"]) == 5
        finally:
            await app.shutdown()

    def test_services_require_init(self):
        app = MarketDataApplication()

        with pytest.raises(RuntimeError):
            app.key_manager

    @pytest.mark.asyncio
    async def test_context_manager_starts_and_stops(self, tmp_path, audit, clock):
        async with MarketDataApplication(make_config(tmp_path), clock, audit, adapters={}) as app:
            assert app.registry.is_running

        assert not app.registry.is_running


class TestCli:
    """Tests for the command line interface."""

    def test_parser(self):
        args = create_parser().parse_args(["price", "BTC/USDT", "AAPL"])

        assert args.command == "price"
        assert args.symbols == ["BTC/USDT", "AAPL"]

    def test_add_key_requires_provider(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["add-key", "--key", "abc"])

    def test_add_key_then_status(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")

        assert main(["add-key", "--provider", "twelvedata", "--key", "cli-secret-value", "--quota", "10"]) == 0
        assert main(["status"]) == 0

        output = capsys.readouterr().out
        assert "cli-...alue" in output
        assert "cli-secret-value" not in output

    def test_duplicate_key_name_fails(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
        args = ["add-key", "--provider", "binance", "--key", "binance-secret", "--name", "BINANCE_1"]

        assert main(args) == 0
        assert main(args) == 1

    def test_reset_keys(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")

        assert main(["reset-keys"]) == 0
        assert "Reset 0 keys" in capsys.readouterr().out
