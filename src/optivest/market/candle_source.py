"""
Candle and ticker sources.

``CandleSource`` is the interface the scheduler and the engine depend on;
``CcxtCandleSource`` implements it over an exchange's public REST API
through ``ccxt.async_support``.
"""

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, List, Optional

import ccxt.async_support as ccxt
from ccxt.base.errors import BaseError as ExchangeError
from ccxt.base.errors import NetworkError
from pydantic import ValidationError

from ..exceptions import DataUnavailable
from ..logger import get_logger
from ..models.market_data import Candle, Timeframe, normalize_symbol


logger = get_logger(__name__)


class CandleSource(ABC):
    """Historical candles plus a last-price fallback."""

    @abstractmethod
    async def get_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        """
        The most recent ``limit`` candles, oldest first.

        Raises:
            DataUnavailable: the source could not provide candles
        """

    @abstractmethod
    async def get_ticker_price(self, symbol: str) -> Decimal:
        """
        Last traded price.

        Raises:
            DataUnavailable: the source could not provide a price
        """

    async def close(self) -> None:
        """Release network resources."""


class CcxtCandleSource(CandleSource):
    """Public market data from a ccxt exchange (Binance by default)."""

    def __init__(
        self,
        exchange_id: str = "binance",
        timeout_ms: int = 10000,
        max_retries: int = 2,
        base_delay: float = 0.5,
        max_delay: float = 4.0,
        exchange: Optional[Any] = None,
    ):
        if exchange is None:
            try:
                exchange_class = getattr(ccxt, exchange_id)
            except AttributeError:
                raise ValueError(f"Unknown ccxt exchange '{exchange_id}'") from None
            exchange = exchange_class({"enableRateLimit": True, "timeout": timeout_ms})
        self.exchange = exchange
        self.exchange_id = exchange_id
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    async def _call(self, description: str, symbol: str, method, *args, **kwargs):
        """Call an exchange method, retrying network errors with exponential backoff."""
        for attempt in range(self.max_retries + 1):
            try:
                return await method(*args, **kwargs)
            except NetworkError as e:
                if attempt >= self.max_retries:
                    raise DataUnavailable(f"{description} for {symbol} failed: {e}", symbol=symbol) from e
                delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                logger.warning(f"{description} for {symbol} failed (attempt {attempt + 1}), retrying in {delay}s: {e}")
                await asyncio.sleep(delay)
            except ExchangeError as e:
                raise DataUnavailable(f"{description} for {symbol} failed: {e}", symbol=symbol) from e

    async def get_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        symbol = normalize_symbol(symbol)
        rows = await self._call(
            "OHLCV fetch", symbol, self.exchange.fetch_ohlcv, symbol, Timeframe(timeframe).value, limit=limit
        )
        if not rows:
            raise DataUnavailable(f"No candles returned for {symbol}", symbol=symbol)

        candles = []
        for row in rows:
            try:
                candles.append(Candle.from_ohlcv(row))
            except (ValidationError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed candle for {symbol}: {row} ({e})")
        if not candles:
            raise DataUnavailable(f"No valid candles returned for {symbol}", symbol=symbol)

        candles.sort(key=lambda c: c.timestamp)
        return candles

    async def get_ticker_price(self, symbol: str) -> Decimal:
        symbol = normalize_symbol(symbol)
        ticker = await self._call("Ticker fetch", symbol, self.exchange.fetch_ticker, symbol)
        last = (ticker or {}).get("last") or (ticker or {}).get("close")
        if last is None or float(last) <= 0:
            raise DataUnavailable(f"Ticker for {symbol} has no last price", symbol=symbol)
        return Decimal(str(last))

    async def close(self) -> None:
        await self.exchange.close()
