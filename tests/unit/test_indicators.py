"""
Unit tests for the indicator engine.
"""

import pandas as pd
import pytest

from optivest.indicators.engine import (
    InsufficientData,
    atr,
    bollinger_bands,
    candles_to_frame,
    cci,
    compute_snapshot,
    ema,
    macd,
    rsi,
    sma,
    stochastic,
    williams_r,
)


def flat_frame(rows: int, high: float = 101.0, low: float = 99.0, close: float = 100.0) -> pd.DataFrame:
    return pd.DataFrame({
        "open": [close] * rows,
        "high": [high] * rows,
        "low": [low] * rows,
        "close": [close] * rows,
        "volume": [10.0] * rows,
    })


class TestInsufficientData:
    """Short windows produce a marker instead of a number."""

    def test_sma_50_on_10_candles(self, make_candles):
        candles = make_candles([100 + i for i in range(10)])

        result = sma(candles, 50)

        assert isinstance(result, InsufficientData)
        assert result == InsufficientData("sma_50", 50, 10)
        assert not result

    def test_minimum_lengths(self, make_candles):
        candles = make_candles([100 + i for i in range(14)])

        assert isinstance(rsi(candles, 14), InsufficientData)
        assert not isinstance(rsi(make_candles([100 + i for i in range(15)]), 14), InsufficientData)
        assert isinstance(macd(candles), InsufficientData)
        assert isinstance(atr(flat_frame(5), 5), InsufficientData)
        assert isinstance(stochastic(flat_frame(15), 14, 3), InsufficientData)

    def test_empty_window(self):
        assert isinstance(sma([], 5), InsufficientData)


class TestIndicatorValues:
    """Known values on simple inputs."""

    def test_sma(self, make_candles):
        candles = make_candles([1.0, 2.0, 3.0, 4.0, 5.0])
        assert sma(candles, 3) == pytest.approx(4.0)

    def test_ema_of_constant_series(self, make_candles):
        candles = make_candles([50.0] * 20)
        assert ema(candles, 9) == pytest.approx(50.0)

    def test_rsi_rising_and_flat(self, make_candles):
        assert rsi(make_candles([100.0 + i for i in range(30)]), 14) == pytest.approx(100.0)
        assert rsi(make_candles([100.0] * 30), 14) == pytest.approx(50.0)

    def test_bollinger_flat_market(self):
        bands = bollinger_bands(flat_frame(21), 21, 1.0)

        assert bands.upper == pytest.approx(100.0)
        assert bands.middle == pytest.approx(100.0)
        assert bands.lower == pytest.approx(100.0)

    def test_atr_constant_range(self):
        assert atr(flat_frame(6), 5) == pytest.approx(2.0)

    def test_flat_range_oscillators(self):
        df = flat_frame(30, high=100.0, low=100.0)

        assert stochastic(df, 14, 3).k == pytest.approx(50.0)
        assert williams_r(df, 14) == pytest.approx(-50.0)
        assert cci(df, 20) == pytest.approx(0.0)

    def test_williams_r_at_high(self):
        df = flat_frame(14)
        df.loc[13, "close"] = 101.0

        assert williams_r(df, 14) == pytest.approx(0.0)


class TestSnapshot:
    """The snapshot bundles every indicator for the latest candle."""

    def test_snapshot_marks_missing_indicators(self, make_candles):
        candles = make_candles([100.0 + (i % 7) for i in range(30)])

        snapshot = compute_snapshot(candles, symbol="BTC/USDT")

        assert snapshot.candle_count == 30
        assert snapshot.price == pytest.approx(candles[-1].close)
        assert snapshot.timestamp == candles[-1].timestamp
        assert snapshot.sma_20 is not None
        assert snapshot.sma_50 is None
        assert "sma_50" in snapshot.insufficient
        assert "macd" in snapshot.insufficient
        assert not snapshot.is_available("sma_50")
        assert snapshot.is_available("sma_20")

    def test_snapshot_is_deterministic(self, make_candles):
        candles = make_candles([100.0 + ((i * 37) % 11) for i in range(80)])

        first = compute_snapshot(candles, symbol="ETH/USDT")
        second = compute_snapshot(candles_to_frame(candles), symbol="ETH/USDT")

        assert first == second
        assert first.insufficient == []
