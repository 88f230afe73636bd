"""
Pytest configuration and fixtures for Optivest tests.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Sequence
from unittest.mock import patch

import pytest

from optivest.config import Config
from optivest.exceptions import DataUnavailable
from optivest.market.candle_source import CandleSource
from optivest.models.market_data import Candle, Timeframe, normalize_symbol
from optivest.paper_trading.ledger import PositionLedger
from optivest.paper_trading.persistence import SnapshotStore


START_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def build_candles(
    closes: Sequence[float],
    volumes: Optional[Sequence[float]] = None,
    start: datetime = START_TIME,
    step: timedelta = timedelta(hours=1),
    spread: float = 0.001,
) -> List[Candle]:
    """Candles whose open is the previous close and whose wicks sit ``spread`` outside the body."""
    candles = []
    previous = closes[0]
    for i, close in enumerate(closes):
        open_ = previous
        candles.append(Candle(
            timestamp=start + i * step,
            open=open_,
            high=max(open_, close) * (1 + spread),
            low=min(open_, close) * (1 - spread),
            close=close,
            volume=volumes[i] if volumes is not None else 100.0,
        ))
        previous = close
    return candles


class FakeCandleSource(CandleSource):
    """In-memory candle source keyed by symbol."""

    def __init__(
        self,
        candles: Optional[Dict[str, List[Candle]]] = None,
        prices: Optional[Dict[str, Decimal]] = None,
    ):
        self.candles = {normalize_symbol(k): v for k, v in (candles or {}).items()}
        self.prices = {normalize_symbol(k): Decimal(str(v)) for k, v in (prices or {}).items()}
        self.candle_requests: List[str] = []
        self.closed = False

    async def get_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        symbol = normalize_symbol(symbol)
        self.candle_requests.append(symbol)
        if symbol not in self.candles:
            raise DataUnavailable(f"No candles for {symbol}", symbol=symbol)
        return self.candles[symbol][-limit:]

    async def get_ticker_price(self, symbol: str) -> Decimal:
        symbol = normalize_symbol(symbol)
        if symbol not in self.prices:
            raise DataUnavailable(f"No price for {symbol}", symbol=symbol)
        return self.prices[symbol]

    async def close(self) -> None:
        self.closed = True


class FixedClock:
    """Settable clock for cooldown and timestamp assertions."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def mock_env_vars() -> Generator[dict, None, None]:
    """Mock environment variables for testing."""
    test_env = {
        "LOG_LEVEL": "DEBUG",
        "TICK_INTERVAL": "30",
        "MIN_CONFIDENCE": "0.65",
        "TRADE_COOLDOWN": "45",
        "CANDLE_TIMEFRAME": "15m",
        "TRACKED_SYMBOLS": "BTC/USDT, ethusdt",
        "INITIAL_BALANCE": "5000",
        "STOP_LOSS_PERCENTAGE": "2.5",
        "FEED_ENABLED": "false",
    }

    with patch.dict(os.environ, test_env, clear=False):
        yield test_env


@pytest.fixture
def make_candles() -> Callable[..., List[Candle]]:
    return build_candles


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def fake_source_factory() -> Callable[..., FakeCandleSource]:
    return FakeCandleSource


@pytest.fixture
def store(temp_dir: Path) -> SnapshotStore:
    return SnapshotStore(temp_dir / "paper_trading_data.json")


@pytest.fixture
def ledger(store: SnapshotStore, clock: FixedClock) -> PositionLedger:
    """Ledger with 10000 USDT persisting into the temp directory."""
    return PositionLedger(initial_balance=Decimal("10000"), store=store, clock=clock)


@pytest.fixture
def test_config(temp_dir: Path) -> Config:
    """Configuration writing into the temp directory, feed disabled."""
    config = Config()
    config.storage.state_file = str(temp_dir / "paper_trading_data.json")
    config.storage.symbols_file = str(temp_dir / "selected_coins.json")
    config.feed.enabled = False
    config.trading.tracked_symbols = ["BTC/USDT", "ETH/USDT"]
    return config
