"""
Core Market Data Models

This module contains the market data types used across the engine:
- Timeframe: Enumeration of supported candle timeframes
- Candle: Immutable OHLCV bar
- PriceTick: Latest 24h ticker update for one symbol
- PriceSeries: Bounded, append-only window of candles for a symbol/timeframe

Symbols use the "BASE/QUOTE" form (e.g. "BTC/USDT"). Helpers convert to
and from the concatenated exchange form ("BTCUSDT").
"""

from collections import deque
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Deque, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


KNOWN_QUOTES = ("USDT", "USDC", "BUSD", "BTC", "ETH")


class Timeframe(str, Enum):
    """Supported candlestick timeframes."""

    ONE_MINUTE = "1m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    ONE_HOUR = "1h"
    FOUR_HOURS = "4h"
    ONE_DAY = "1d"

    @property
    def seconds(self) -> int:
        """Convert timeframe to seconds."""
        mapping = {
            "1m": 60,
            "5m": 300,
            "15m": 900,
            "1h": 3600,
            "4h": 14400,
            "1d": 86400,
        }
        return mapping[self.value]

    @property
    def milliseconds(self) -> int:
        """Convert timeframe to milliseconds."""
        return self.seconds * 1000


def split_symbol(symbol: str) -> Tuple[str, str]:
    """Split "BTC/USDT" into ("BTC", "USDT")."""
    if "/" not in symbol:
        raise ValueError(f"Symbol must look like BASE/QUOTE: {symbol!r}")
    base, quote = symbol.upper().split("/", 1)
    if not base or not quote:
        raise ValueError(f"Symbol must look like BASE/QUOTE: {symbol!r}")
    return base, quote


def normalize_symbol(raw: str) -> str:
    """
    Normalise an exchange symbol to the BASE/QUOTE form.

    "BTCUSDT" and "btcusdt" become "BTC/USDT"; symbols already in
    BASE/QUOTE form are upper-cased and returned.
    """
    raw = raw.strip().upper()
    if "/" in raw:
        base, quote = split_symbol(raw)
        return f"{base}/{quote}"
    for quote in KNOWN_QUOTES:
        if raw.endswith(quote) and len(raw) > len(quote):
            return f"{raw[:-len(quote)]}/{quote}"
    raise ValueError(f"Cannot determine quote currency of {raw!r}")


def stream_name(symbol: str) -> str:
    """Lower-case concatenated form used by exchange streams ("btcusdt")."""
    base, quote = split_symbol(symbol)
    return f"{base}{quote}".lower()


def _to_utc(v) -> datetime:
    if isinstance(v, str):
        if v.endswith('Z'):
            v = v[:-1] + '+00:00'
        dt = datetime.fromisoformat(v)
    elif isinstance(v, (int, float)):
        # Milliseconds since the epoch
        dt = datetime.fromtimestamp(v / 1000, tz=timezone.utc)
    elif isinstance(v, datetime):
        dt = v
    else:
        raise ValueError(f"Invalid timestamp format: {type(v)}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    elif dt.tzinfo != timezone.utc:
        dt = dt.astimezone(timezone.utc)
    return dt


class Candle(BaseModel):
    """
    OHLCV candlestick. Immutable once created.

    Prices are floats: candles feed the numeric indicator pipeline, while
    money held in the ledger is kept as Decimal.
    """

    timestamp: datetime = Field(..., description="Candle open time (UTC)")
    open: float = Field(..., gt=0, description="Opening price")
    high: float = Field(..., gt=0, description="Highest price")
    low: float = Field(..., gt=0, description="Lowest price")
    close: float = Field(..., gt=0, description="Closing price")
    volume: float = Field(..., ge=0, description="Traded base volume")

    model_config = ConfigDict(frozen=True)

    @field_validator('timestamp', mode='before')
    @classmethod
    def validate_timestamp(cls, v) -> datetime:
        return _to_utc(v)

    @model_validator(mode='after')
    def validate_ohlc(self):
        if self.high < max(self.open, self.close, self.low):
            raise ValueError(f"High {self.high} is below open/close/low")
        if self.low > min(self.open, self.close):
            raise ValueError(f"Low {self.low} is above open/close")
        return self

    @property
    def time_ms(self) -> int:
        return int(self.timestamp.timestamp() * 1000)

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3

    @classmethod
    def from_ohlcv(cls, row: List[float]) -> "Candle":
        """Build from a ccxt style ``[ms, open, high, low, close, volume]`` row."""
        timestamp, open_, high, low, close, volume = row[:6]
        return cls(
            timestamp=int(timestamp),
            open=float(open_),
            high=float(high),
            low=float(low),
            close=float(close),
            volume=float(volume or 0.0),
        )


class PriceTick(BaseModel):
    """Latest 24h ticker update for one symbol."""

    symbol: str = Field(..., description="Symbol in BASE/QUOTE form")
    price: Decimal = Field(..., gt=Decimal("0"), description="Last traded price")
    change_24h: float = Field(default=0.0, description="24h price change percentage")
    volume: float = Field(default=0.0, ge=0, description="24h base volume")
    high: Optional[Decimal] = Field(default=None, description="24h high")
    low: Optional[Decimal] = Field(default=None, description="24h low")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = Field(default="stream")

    model_config = ConfigDict(frozen=True)

    @field_validator('symbol')
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return normalize_symbol(v)

    @field_validator('timestamp', mode='before')
    @classmethod
    def validate_timestamp(cls, v) -> datetime:
        return _to_utc(v)

    @classmethod
    def from_binance_ticker(cls, payload: dict) -> "PriceTick":
        """Parse a Binance ``24hrTicker`` stream event."""
        event_time = payload.get("E")
        return cls(
            symbol=payload["s"],
            price=Decimal(str(payload["c"])),
            change_24h=float(payload.get("P", 0.0)),
            volume=float(payload.get("v", 0.0)),
            high=Decimal(str(payload["h"])) if payload.get("h") is not None else None,
            low=Decimal(str(payload["l"])) if payload.get("l") is not None else None,
            timestamp=event_time if event_time is not None else datetime.now(timezone.utc),
        )


class PriceSeries:
    """
    Ordered candles for one (symbol, timeframe) pair.

    Append-only and bounded: once ``max_length`` candles are held the
    oldest one drops off. Timestamps must be strictly increasing.
    """

    def __init__(
        self,
        symbol: str,
        timeframe: Timeframe = Timeframe.ONE_HOUR,
        max_length: int = 500,
        candles: Optional[Iterable[Candle]] = None
    ):
        if max_length < 1:
            raise ValueError("max_length must be positive")
        self.symbol = normalize_symbol(symbol)
        self.timeframe = Timeframe(timeframe)
        self.max_length = max_length
        self._candles: Deque[Candle] = deque(maxlen=max_length)
        for candle in candles or ():
            self.append(candle)

    def append(self, candle: Candle) -> None:
        if self._candles and candle.timestamp <= self._candles[-1].timestamp:
            raise ValueError(
                f"Candle at {candle.timestamp.isoformat()} is not after "
                f"{self._candles[-1].timestamp.isoformat()} for {self.symbol}"
            )
        self._candles.append(candle)

    def extend(self, candles: Iterable[Candle]) -> int:
        """Append the candles newer than the last one held; returns how many were added."""
        added = 0
        for candle in candles:
            if self._candles and candle.timestamp <= self._candles[-1].timestamp:
                continue
            self._candles.append(candle)
            added += 1
        return added

    @property
    def candles(self) -> List[Candle]:
        return list(self._candles)

    @property
    def latest(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def window(self, size: int) -> List[Candle]:
        """The most recent ``size`` candles, oldest first."""
        if size <= 0:
            return []
        return list(self._candles)[-size:]

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self) -> Iterator[Candle]:
        return iter(list(self._candles))

    def __repr__(self) -> str:
        return f"PriceSeries(symbol='{self.symbol}', timeframe={self.timeframe.value}, candles={len(self)})"
