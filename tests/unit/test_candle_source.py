"""
Unit tests for the ccxt backed candle source.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from ccxt.base.errors import BadSymbol, NetworkError

from optivest.exceptions import DataUnavailable
from optivest.market.candle_source import CcxtCandleSource
from optivest.models.market_data import Timeframe


class FakeExchange:
    """Stands in for a ccxt async exchange."""

    def __init__(self, rows=None, ticker=None, failures=0, error=NetworkError):
        self.rows = rows or []
        self.ticker = ticker or {}
        self.failures = failures
        self.error = error
        self.calls = []
        self.closed = False

    async def fetch_ohlcv(self, symbol, timeframe, limit=None):
        self.calls.append(("fetch_ohlcv", symbol, timeframe, limit))
        if self.failures:
            self.failures -= 1
            raise self.error("exchange unreachable")
        return self.rows

    async def fetch_ticker(self, symbol):
        self.calls.append(("fetch_ticker", symbol))
        if self.failures:
            self.failures -= 1
            raise self.error("exchange unreachable")
        return self.ticker

    async def close(self):
        self.closed = True


def ms(hour: int) -> int:
    return int(datetime(2024, 1, 1, hour, tzinfo=timezone.utc).timestamp() * 1000)


class TestCcxtCandleSource:
    """OHLCV and ticker retrieval."""

    @pytest.mark.asyncio
    async def test_candles_sorted_and_parsed(self):
        exchange = FakeExchange(rows=[
            [ms(2), 101, 103, 100, 102, 7],
            [ms(1), 100, 102, 99, 101, 5],
        ])
        source = CcxtCandleSource(exchange=exchange)

        candles = await source.get_candles("btcusdt", Timeframe.ONE_HOUR, 50)

        assert exchange.calls == [("fetch_ohlcv", "BTC/USDT", "1h", 50)]
        assert [c.close for c in candles] == [101.0, 102.0]
        assert candles[0].timestamp == datetime(2024, 1, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_malformed_rows_skipped(self):
        exchange = FakeExchange(rows=[
            [ms(1), 100, 102, 99, 101, 5],
            [ms(2), 100, 90, 99, 101, 5],
        ])
        source = CcxtCandleSource(exchange=exchange)

        candles = await source.get_candles("BTC/USDT", Timeframe.ONE_HOUR, 10)

        assert len(candles) == 1

    @pytest.mark.asyncio
    async def test_empty_response(self):
        source = CcxtCandleSource(exchange=FakeExchange(rows=[]))

        with pytest.raises(DataUnavailable):
            await source.get_candles("BTC/USDT", Timeframe.ONE_HOUR, 10)

    @pytest.mark.asyncio
    async def test_network_errors_retried(self):
        exchange = FakeExchange(rows=[[ms(1), 100, 102, 99, 101, 5]], failures=2)
        source = CcxtCandleSource(exchange=exchange, max_retries=2, base_delay=0)

        candles = await source.get_candles("BTC/USDT", Timeframe.ONE_HOUR, 10)

        assert len(candles) == 1
        assert len(exchange.calls) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        exchange = FakeExchange(failures=5)
        source = CcxtCandleSource(exchange=exchange, max_retries=1, base_delay=0)

        with pytest.raises(DataUnavailable):
            await source.get_candles("BTC/USDT", Timeframe.ONE_HOUR, 10)
        assert len(exchange.calls) == 2

    @pytest.mark.asyncio
    async def test_exchange_error_not_retried(self):
        exchange = FakeExchange(failures=5, error=BadSymbol)
        source = CcxtCandleSource(exchange=exchange, max_retries=3, base_delay=0)

        with pytest.raises(DataUnavailable):
            await source.get_ticker_price("BTC/USDT")
        assert len(exchange.calls) == 1

    @pytest.mark.asyncio
    async def test_ticker_price(self):
        source = CcxtCandleSource(exchange=FakeExchange(ticker={"last": 45123.5}))

        assert await source.get_ticker_price("BTC/USDT") == Decimal("45123.5")

    @pytest.mark.asyncio
    async def test_ticker_without_price(self):
        source = CcxtCandleSource(exchange=FakeExchange(ticker={"last": None, "close": None}))

        with pytest.raises(DataUnavailable):
            await source.get_ticker_price("BTC/USDT")

    @pytest.mark.asyncio
    async def test_close(self):
        exchange = FakeExchange()
        await CcxtCandleSource(exchange=exchange).close()

        assert exchange.closed

    def test_unknown_exchange(self):
        with pytest.raises(ValueError):
            CcxtCandleSource("not_an_exchange")
