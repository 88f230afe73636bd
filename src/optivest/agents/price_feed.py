"""
Price Feed Agent

Streams 24h ticker updates for the tracked symbols from the Binance
websocket API and keeps the latest tick per symbol in a cache.

Connection handling:
- a watchdog closes the socket when no message arrived within the
  heartbeat timeout, which sends the feed through the reconnect path
- reconnects back off exponentially (``base_delay * 2 ** attempt``)
- after ``max_reconnect_attempts`` consecutive failures the feed goes to
  the terminal UNAVAILABLE state and sets its ``unavailable`` event
- a successful connection resets the attempt counter

Consumers either read the cache (``get_price``) or subscribe to a bounded
queue of ticks. A full queue drops its oldest tick.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import websockets
from pydantic import ValidationError
from websockets.exceptions import WebSocketException

from ..config import FeedConfig
from ..exceptions import FeedDisconnected
from ..models.market_data import PriceTick, normalize_symbol, stream_name
from .base import AgentState, AgentType, BaseAgent


class FeedStatus(str, Enum):
    """Connection status of the price feed."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    UNAVAILABLE = "unavailable"
    STOPPED = "stopped"


@dataclass(frozen=True)
class CachedPrice:
    tick: PriceTick
    received_at: float


class PriceFeed(BaseAgent):
    """Binance ticker stream with heartbeat and bounded reconnects."""

    def __init__(
        self,
        symbols: Iterable[str],
        config: Optional[FeedConfig] = None,
        connect: Optional[Callable[[str], Any]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__("price_feed", AgentType.PRICE_FEED)
        self.config = config or FeedConfig()
        self.symbols: List[str] = [normalize_symbol(s) for s in symbols]
        self._connect = connect or websockets.connect
        self._sleep = sleep or self._sleep_or_stop
        self._clock = clock or time.monotonic

        self.status = FeedStatus.DISCONNECTED
        self.unavailable = asyncio.Event()
        self.reconnect_attempts = 0
        self.reconnect_delays: List[float] = []

        self._cache: Dict[str, CachedPrice] = {}
        self._subscribers: List[asyncio.Queue] = []
        self._ws = None
        self._last_message_at: float = 0.0
        self._stale = False

    @property
    def stream_url(self) -> str:
        streams = "/".join(f"{stream_name(s)}@ticker" for s in self.symbols)
        return f"{self.config.url.rstrip('/')}/{streams}"

    @property
    def is_connected(self) -> bool:
        return self.status == FeedStatus.CONNECTED

    # Lifecycle

    async def _start(self) -> bool:
        if not self.symbols:
            self.logger.error("Price feed has no symbols to subscribe to")
            return False
        self.unavailable = asyncio.Event()
        self.reconnect_attempts = 0
        self.create_task(self._run())
        return True

    async def _stop(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self.status = FeedStatus.STOPPED

    async def set_symbols(self, symbols: Iterable[str]) -> None:
        """Change the subscription; an open stream is closed and reopened."""
        self.symbols = [normalize_symbol(s) for s in symbols]
        if self._ws is not None:
            self.logger.info(f"Resubscribing to {len(self.symbols)} symbols")
            await self._ws.close()

    # Connection loop

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            self.status = FeedStatus.RECONNECTING if self.reconnect_attempts else FeedStatus.CONNECTING
            try:
                await self._connect_and_listen()
            except (WebSocketException, OSError, asyncio.TimeoutError, FeedDisconnected) as e:
                self.record_error(e)
                self.logger.warning(f"Price stream disconnected: {e}")
            finally:
                self._ws = None

            if self._stop_event.is_set():
                break

            if self.reconnect_attempts >= self.config.max_reconnect_attempts:
                self._mark_unavailable()
                return

            delay = self.config.reconnect_base_delay * (2 ** self.reconnect_attempts)
            self.reconnect_attempts += 1
            self.reconnect_delays.append(delay)
            self.status = FeedStatus.RECONNECTING
            self.logger.info(
                f"Reconnecting in {delay:g}s "
                f"(attempt {self.reconnect_attempts}/{self.config.max_reconnect_attempts})"
            )
            if await self._sleep(delay):
                break

        self.status = FeedStatus.STOPPED

    async def _connect_and_listen(self) -> None:
        self._stale = False
        async with self._connect(self.stream_url) as ws:
            self._ws = ws
            self.status = FeedStatus.CONNECTED
            self.reconnect_attempts = 0
            self._last_message_at = self._clock()
            self.logger.info(f"Price stream connected ({len(self.symbols)} symbols)")

            watchdog = asyncio.create_task(self._watchdog(ws))
            try:
                async for raw in ws:
                    self.process_message(raw)
            finally:
                watchdog.cancel()
                await asyncio.gather(watchdog, return_exceptions=True)

        if self._stale:
            raise FeedDisconnected(f"No message for {self.config.heartbeat_timeout:g}s")
        raise FeedDisconnected("Stream closed")

    async def _watchdog(self, ws) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            silence = self._clock() - self._last_message_at
            if silence > self.config.heartbeat_timeout:
                self._stale = True
                self.logger.warning(f"Heartbeat timeout after {silence:.0f}s, forcing reconnect")
                await ws.close()
                return

    def _mark_unavailable(self) -> None:
        self.status = FeedStatus.UNAVAILABLE
        self._set_state(AgentState.ERROR)
        self.unavailable.set()
        self.logger.error(
            f"Price feed unavailable after {self.config.max_reconnect_attempts} reconnect attempts"
        )

    # Messages

    def process_message(self, raw: Union[str, bytes]) -> Optional[PriceTick]:
        """Parse one stream message and publish the tick it carries."""
        self._last_message_at = self._clock()
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as e:
            self.logger.debug(f"Ignoring undecodable message: {e}")
            return None

        # Combined-stream endpoints wrap the event
        if isinstance(payload, dict) and "data" in payload:
            payload = payload["data"]
        if not isinstance(payload, dict) or payload.get("e") != "24hrTicker":
            return None

        try:
            tick = PriceTick.from_binance_ticker(payload)
        except (KeyError, ValueError, ValidationError, ArithmeticError) as e:
            self.logger.debug(f"Ignoring malformed ticker event: {e}")
            return None

        self.publish(tick)
        return tick

    def publish(self, tick: PriceTick) -> None:
        """Replace the cache entry and fan the tick out to subscribers."""
        self._cache[tick.symbol] = CachedPrice(tick=tick, received_at=self._clock())
        self.health.messages_processed += 1
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(tick)

    def subscribe(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self.config.queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    # Cache

    def get_price(self, symbol: str, max_age: Optional[float] = None) -> Optional[PriceTick]:
        """Cached tick, or None when missing or older than ``max_age`` seconds."""
        entry = self._cache.get(normalize_symbol(symbol))
        if entry is None:
            return None
        limit = self.config.price_max_age if max_age is None else max_age
        if self._clock() - entry.received_at > limit:
            return None
        return entry.tick

    def get_all_prices(self) -> Dict[str, PriceTick]:
        return {symbol: entry.tick for symbol, entry in self._cache.items()}

    def get_cache_stats(self) -> Dict[str, Any]:
        now = self._clock()
        fresh = sum(1 for e in self._cache.values() if now - e.received_at <= self.config.price_max_age)
        return {
            "status": self.status.value,
            "cached_symbols": len(self._cache),
            "fresh_symbols": fresh,
            "subscribed_symbols": len(self.symbols),
            "reconnect_attempts": self.reconnect_attempts,
            "messages_processed": self.health.messages_processed,
        }

    def _health_details(self) -> Dict[str, Any]:
        return self.get_cache_stats()
