"""
Unit tests for the streaming price feed.
"""

import asyncio
import json
from decimal import Decimal

import pytest

from optivest.agents.base import AgentState
from optivest.agents.price_feed import FeedStatus, PriceFeed
from optivest.config import FeedConfig
from optivest.models.market_data import PriceTick


def ticker_event(symbol: str = "BTCUSDT", price: str = "45000.00") -> str:
    return json.dumps({
        "e": "24hrTicker",
        "E": 1704067200000,
        "s": symbol,
        "c": price,
        "P": "1.25",
        "v": "100.5",
        "h": "46000.00",
        "l": "44000.00",
    })


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakeSocket:
    """Websocket stand-in: yields its messages, then ends or blocks until closed."""

    def __init__(self, messages=(), block: bool = False):
        self.messages = list(messages)
        self.block = block
        self.closed = False
        self._closed = asyncio.Event()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message
        if self.block:
            await self._closed.wait()

    async def close(self):
        self.closed = True
        self._closed.set()


class Connector:
    """Hands out the given sockets in order, then refuses connections."""

    def __init__(self, *sockets):
        self.sockets = list(sockets)
        self.urls = []

    def __call__(self, url: str):
        self.urls.append(url)
        if self.sockets:
            return self.sockets.pop(0)
        raise OSError("connection refused")


class RecordingSleep:
    def __init__(self, stop: bool = False):
        self.delays = []
        self.stop = stop

    async def __call__(self, delay: float) -> bool:
        self.delays.append(delay)
        await asyncio.sleep(0)
        return self.stop


class TestStreamUrl:
    def test_stream_url_lists_ticker_streams(self):
        feed = PriceFeed(["BTCUSDT", "eth/usdt"], FeedConfig(url="wss://example.test/ws/"))

        assert feed.symbols == ["BTC/USDT", "ETH/USDT"]
        assert feed.stream_url == "wss://example.test/ws/btcusdt@ticker/ethusdt@ticker"

    @pytest.mark.asyncio
    async def test_start_without_symbols_fails(self):
        feed = PriceFeed([], FeedConfig())

        assert await feed.start() is False
        assert feed.state == AgentState.ERROR


class TestReconnect:
    """Exponential backoff and the terminal unavailable state."""

    @pytest.mark.asyncio
    async def test_backoff_then_unavailable(self):
        connector = Connector()
        sleep = RecordingSleep()
        feed = PriceFeed(["BTC/USDT"], FeedConfig(), connect=connector, sleep=sleep)

        assert await feed.start() is True
        await asyncio.wait_for(feed.unavailable.wait(), timeout=2)

        assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert feed.reconnect_delays == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert len(connector.urls) == 6
        assert feed.status == FeedStatus.UNAVAILABLE
        assert feed.state == AgentState.ERROR
        assert feed.health.error_count == 6

        await feed.stop()
        assert feed.status == FeedStatus.STOPPED

    @pytest.mark.asyncio
    async def test_successful_connection_caches_prices(self):
        socket = FakeSocket([ticker_event("BTCUSDT", "45000.00")])
        connector = Connector(socket)
        sleep = RecordingSleep()
        feed = PriceFeed(["BTC/USDT"], FeedConfig(), connect=connector, sleep=sleep)

        await feed.start()
        await asyncio.wait_for(feed.unavailable.wait(), timeout=2)

        assert connector.urls[0] == feed.stream_url
        assert socket.closed
        assert feed.get_price("BTC/USDT", max_age=1e9).price == Decimal("45000.00")
        # The successful connection reset the attempt counter
        assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
        await feed.stop()

    @pytest.mark.asyncio
    async def test_heartbeat_timeout_forces_reconnect(self):
        socket = FakeSocket(block=True)
        sleep = RecordingSleep(stop=True)
        config = FeedConfig(heartbeat_interval=0.01, heartbeat_timeout=0.02)
        feed = PriceFeed(["BTC/USDT"], config, connect=Connector(socket), sleep=sleep)

        await feed.start()
        for _ in range(200):
            if sleep.delays:
                break
            await asyncio.sleep(0.01)

        assert socket.closed
        assert sleep.delays == [1.0]
        assert "No message" in feed.health.last_error
        await feed.stop()


class TestMessages:
    """Parsing ticker events into the cache."""

    def test_ticker_event_cached(self):
        feed = PriceFeed(["BTC/USDT"], FeedConfig(), clock=ManualClock())

        tick = feed.process_message(ticker_event())

        assert tick.symbol == "BTC/USDT"
        assert feed.get_price("BTCUSDT").price == Decimal("45000.00")
        assert feed.get_all_prices()["BTC/USDT"] is tick
        assert feed.health.messages_processed == 1

    def test_combined_stream_wrapper(self):
        feed = PriceFeed(["ETH/USDT"], FeedConfig(), clock=ManualClock())
        wrapped = json.dumps({"stream": "ethusdt@ticker", "data": json.loads(ticker_event("ETHUSDT", "2500"))})

        assert feed.process_message(wrapped).price == Decimal("2500")

    def test_irrelevant_and_malformed_messages_ignored(self):
        feed = PriceFeed(["BTC/USDT"], FeedConfig(), clock=ManualClock())

        assert feed.process_message("not json") is None
        assert feed.process_message(json.dumps({"e": "trade", "s": "BTCUSDT"})) is None
        assert feed.process_message(json.dumps({"e": "24hrTicker", "s": "BTCUSDT", "c": "-1"})) is None
        assert feed.get_all_prices() == {}

    def test_stale_price_expires(self):
        clock = ManualClock()
        feed = PriceFeed(["BTC/USDT"], FeedConfig(price_max_age=60), clock=clock)
        feed.process_message(ticker_event())

        clock.now += 61

        assert feed.get_price("BTC/USDT") is None
        assert feed.get_price("BTC/USDT", max_age=120) is not None
        assert feed.get_cache_stats()["fresh_symbols"] == 0

    def test_full_queue_drops_oldest(self):
        feed = PriceFeed(["BTC/USDT"], FeedConfig(), clock=ManualClock())
        queue = feed.subscribe(maxsize=2)

        for price in ("1", "2", "3"):
            feed.publish(PriceTick(symbol="BTC/USDT", price=Decimal(price)))

        assert queue.qsize() == 2
        assert queue.get_nowait().price == Decimal("2")
        assert queue.get_nowait().price == Decimal("3")

        feed.unsubscribe(queue)
        feed.publish(PriceTick(symbol="BTC/USDT", price=Decimal("4")))
        assert queue.empty()
