"""
Indicator Engine

Pure, stateless technical indicators over a window of candles, computed
with pandas. Every indicator has a minimum window length; a shorter
window yields an ``InsufficientData`` marker instead of a number.

Two layers are exposed:
- ``*_series`` / ``*_frame`` functions return the full pandas series so
  strategies can look at previous bars (crossovers, ratchets)
- scalar functions (``sma``, ``rsi``, ``macd`` ...) return the value for
  the latest candle, or ``InsufficientData``

``compute_snapshot`` gathers every indicator the strategies use into an
``IndicatorSnapshot``.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from ..models.market_data import Candle, PriceSeries
from ..models.signals import IndicatorSnapshot


CandleInput = Union[Sequence[Candle], PriceSeries, pd.DataFrame]


class InsufficientData:
    """Marker returned when a window is shorter than an indicator needs."""

    __slots__ = ("indicator", "required", "available")

    def __init__(self, indicator: str, required: int, available: int):
        self.indicator = indicator
        self.required = required
        self.available = available

    def __bool__(self) -> bool:
        return False

    def __eq__(self, other) -> bool:
        if not isinstance(other, InsufficientData):
            return NotImplemented
        return (self.indicator, self.required, self.available) == (
            other.indicator, other.required, other.available
        )

    def __hash__(self) -> int:
        return hash((self.indicator, self.required, self.available))

    def __repr__(self) -> str:
        return (
            f"InsufficientData(indicator='{self.indicator}', "
            f"required={self.required}, available={self.available})"
        )


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class MACDResult:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class StochasticResult:
    k: float
    d: float


@dataclass(frozen=True)
class ADXResult:
    adx: float
    plus_di: float
    minus_di: float


# Minimum window lengths

def sma_min_length(period: int) -> int:
    return period


def ema_min_length(period: int) -> int:
    return period


def rsi_min_length(period: int) -> int:
    return period + 1


def macd_min_length(fast: int, slow: int, signal: int) -> int:
    return max(fast, slow) + signal - 1


def bollinger_min_length(period: int) -> int:
    return period


def atr_min_length(period: int) -> int:
    return period + 1


def stochastic_min_length(k_period: int, d_period: int) -> int:
    return k_period + d_period - 1


def adx_min_length(period: int) -> int:
    return 2 * period


def cci_min_length(period: int) -> int:
    return period


def williams_r_min_length(period: int) -> int:
    return period


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    """OHLCV DataFrame indexed by candle timestamp."""
    rows = [
        {
            "timestamp": c.timestamp,
            "open": float(c.open),
            "high": float(c.high),
            "low": float(c.low),
            "close": float(c.close),
            "volume": float(c.volume),
        }
        for c in candles
    ]
    if not rows:
        return pd.DataFrame(columns=["open", "high", "low", "close", "volume"], dtype=float)
    return pd.DataFrame(rows).set_index("timestamp")


def _as_frame(data: CandleInput) -> pd.DataFrame:
    if isinstance(data, pd.DataFrame):
        return data
    return candles_to_frame(data)


def _last(series: pd.Series, name: str, required: int) -> Union[float, InsufficientData]:
    if series.empty:
        return InsufficientData(name, required, 0)
    value = series.iloc[-1]
    if pd.isna(value):
        return InsufficientData(name, required, len(series))
    return float(value)


# Series layer

def sma_series(close: pd.Series, period: int) -> pd.Series:
    return close.rolling(window=period, min_periods=period).mean()


def ema_series(close: pd.Series, period: int) -> pd.Series:
    """Exponential moving average seeded with the first value of the window."""
    return close.ewm(span=period, adjust=False, min_periods=period).mean()


def rsi_series(close: pd.Series, period: int = 14) -> pd.Series:
    """Wilder RSI."""
    delta = close.diff()
    gain = delta.clip(lower=0)
    loss = -delta.clip(upper=0)
    avg_gain = gain.ewm(alpha=1 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1 / period, adjust=False, min_periods=period).mean()

    rs = avg_gain / avg_loss.where(avg_loss != 0)
    rsi = 100 - 100 / (1 + rs)
    # No losses in the window: 100 if anything was gained, flat market 50
    rsi = rsi.mask((avg_loss == 0) & (avg_gain > 0), 100.0)
    rsi = rsi.mask((avg_loss == 0) & (avg_gain == 0), 50.0)
    return rsi


def macd_frame(close: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> pd.DataFrame:
    fast_ema = close.ewm(span=fast, adjust=False).mean()
    slow_ema = close.ewm(span=slow, adjust=False).mean()
    macd_line = (fast_ema - slow_ema).where(close.expanding().count() >= max(fast, slow))
    signal_line = macd_line.ewm(span=signal, adjust=False, min_periods=signal).mean()
    return pd.DataFrame({
        "macd": macd_line,
        "signal": signal_line,
        "histogram": macd_line - signal_line,
    })


def bollinger_frame(close: pd.Series, period: int = 21, std_dev: float = 1.0) -> pd.DataFrame:
    """Bollinger bands using the population standard deviation."""
    middle = close.rolling(window=period, min_periods=period).mean()
    std = close.rolling(window=period, min_periods=period).std(ddof=0)
    return pd.DataFrame({
        "upper": middle + std_dev * std,
        "middle": middle,
        "lower": middle - std_dev * std,
    })


def true_range(df: pd.DataFrame) -> pd.Series:
    """True range; undefined for the first bar, which has no previous close."""
    prev_close = df["close"].shift(1)
    ranges = pd.concat(
        [
            df["high"] - df["low"],
            (df["high"] - prev_close).abs(),
            (df["low"] - prev_close).abs(),
        ],
        axis=1,
    )
    tr = ranges.max(axis=1)
    if len(tr):
        tr.iloc[0] = np.nan
    return tr


def atr_series(df: pd.DataFrame, period: int = 5) -> pd.Series:
    """Average true range as the simple mean of the last ``period`` true ranges."""
    return true_range(df).rolling(window=period, min_periods=period).mean()


def stochastic_frame(df: pd.DataFrame, k_period: int = 14, d_period: int = 3) -> pd.DataFrame:
    lowest = df["low"].rolling(window=k_period, min_periods=k_period).min()
    highest = df["high"].rolling(window=k_period, min_periods=k_period).max()
    span = highest - lowest
    k = 100 * (df["close"] - lowest) / span.where(span != 0)
    k = k.mask(span == 0, 50.0)
    d = k.rolling(window=d_period, min_periods=d_period).mean()
    return pd.DataFrame({"k": k, "d": d})


def adx_frame(df: pd.DataFrame, period: int = 14) -> pd.DataFrame:
    """ADX with the directional indicators, Wilder smoothing."""
    up_move = df["high"].diff()
    down_move = -df["low"].diff()

    plus_dm = up_move.where((up_move > down_move) & (up_move > 0), 0.0)
    minus_dm = down_move.where((down_move > up_move) & (down_move > 0), 0.0)
    if len(df):
        plus_dm.iloc[0] = np.nan
        minus_dm.iloc[0] = np.nan

    alpha = 1 / period
    smoothed_tr = true_range(df).ewm(alpha=alpha, adjust=False, min_periods=period).mean()
    smoothed_plus = plus_dm.ewm(alpha=alpha, adjust=False, min_periods=period).mean()
    smoothed_minus = minus_dm.ewm(alpha=alpha, adjust=False, min_periods=period).mean()

    plus_di = (100 * smoothed_plus / smoothed_tr.where(smoothed_tr != 0)).mask(smoothed_tr == 0, 0.0)
    minus_di = (100 * smoothed_minus / smoothed_tr.where(smoothed_tr != 0)).mask(smoothed_tr == 0, 0.0)

    di_sum = plus_di + minus_di
    dx = (100 * (plus_di - minus_di).abs() / di_sum.where(di_sum != 0)).mask(di_sum == 0, 0.0)
    adx = dx.ewm(alpha=alpha, adjust=False, min_periods=period).mean()

    return pd.DataFrame({"adx": adx, "plus_di": plus_di, "minus_di": minus_di})


def cci_series(df: pd.DataFrame, period: int = 20) -> pd.Series:
    typical = (df["high"] + df["low"] + df["close"]) / 3
    mean = typical.rolling(window=period, min_periods=period).mean()
    mean_deviation = typical.rolling(window=period, min_periods=period).apply(
        lambda window: np.mean(np.abs(window - window.mean())), raw=True
    )
    cci = (typical - mean) / (0.015 * mean_deviation.where(mean_deviation != 0))
    return cci.mask(mean_deviation == 0, 0.0)


def williams_r_series(df: pd.DataFrame, period: int = 14) -> pd.Series:
    highest = df["high"].rolling(window=period, min_periods=period).max()
    lowest = df["low"].rolling(window=period, min_periods=period).min()
    span = highest - lowest
    wr = -100 * (highest - df["close"]) / span.where(span != 0)
    return wr.mask(span == 0, -50.0)


# Latest-value layer

def sma(candles: CandleInput, period: int = 20) -> Union[float, InsufficientData]:
    df = _as_frame(candles)
    required = sma_min_length(period)
    if len(df) < required:
        return InsufficientData(f"sma_{period}", required, len(df))
    return _last(sma_series(df["close"], period), f"sma_{period}", required)


def ema(candles: CandleInput, period: int = 9) -> Union[float, InsufficientData]:
    df = _as_frame(candles)
    required = ema_min_length(period)
    if len(df) < required:
        return InsufficientData(f"ema_{period}", required, len(df))
    return _last(ema_series(df["close"], period), f"ema_{period}", required)


def rsi(candles: CandleInput, period: int = 14) -> Union[float, InsufficientData]:
    df = _as_frame(candles)
    required = rsi_min_length(period)
    if len(df) < required:
        return InsufficientData(f"rsi_{period}", required, len(df))
    return _last(rsi_series(df["close"], period), f"rsi_{period}", required)


def macd(
    candles: CandleInput, fast: int = 12, slow: int = 26, signal: int = 9
) -> Union[MACDResult, InsufficientData]:
    df = _as_frame(candles)
    required = macd_min_length(fast, slow, signal)
    if len(df) < required:
        return InsufficientData("macd", required, len(df))
    last = macd_frame(df["close"], fast, slow, signal).iloc[-1]
    if last.isna().any():
        return InsufficientData("macd", required, len(df))
    return MACDResult(macd=float(last["macd"]), signal=float(last["signal"]), histogram=float(last["histogram"]))


def bollinger_bands(
    candles: CandleInput, period: int = 21, std_dev: float = 1.0
) -> Union[BollingerBands, InsufficientData]:
    df = _as_frame(candles)
    required = bollinger_min_length(period)
    if len(df) < required:
        return InsufficientData("bollinger", required, len(df))
    last = bollinger_frame(df["close"], period, std_dev).iloc[-1]
    return BollingerBands(upper=float(last["upper"]), middle=float(last["middle"]), lower=float(last["lower"]))


def atr(candles: CandleInput, period: int = 5) -> Union[float, InsufficientData]:
    df = _as_frame(candles)
    required = atr_min_length(period)
    if len(df) < required:
        return InsufficientData(f"atr_{period}", required, len(df))
    return _last(atr_series(df, period), f"atr_{period}", required)


def stochastic(
    candles: CandleInput, k_period: int = 14, d_period: int = 3
) -> Union[StochasticResult, InsufficientData]:
    df = _as_frame(candles)
    required = stochastic_min_length(k_period, d_period)
    if len(df) < required:
        return InsufficientData("stochastic", required, len(df))
    last = stochastic_frame(df, k_period, d_period).iloc[-1]
    return StochasticResult(k=float(last["k"]), d=float(last["d"]))


def adx(candles: CandleInput, period: int = 14) -> Union[ADXResult, InsufficientData]:
    df = _as_frame(candles)
    required = adx_min_length(period)
    if len(df) < required:
        return InsufficientData(f"adx_{period}", required, len(df))
    last = adx_frame(df, period).iloc[-1]
    if last.isna().any():
        return InsufficientData(f"adx_{period}", required, len(df))
    return ADXResult(adx=float(last["adx"]), plus_di=float(last["plus_di"]), minus_di=float(last["minus_di"]))


def cci(candles: CandleInput, period: int = 20) -> Union[float, InsufficientData]:
    df = _as_frame(candles)
    required = cci_min_length(period)
    if len(df) < required:
        return InsufficientData(f"cci_{period}", required, len(df))
    return _last(cci_series(df, period), f"cci_{period}", required)


def williams_r(candles: CandleInput, period: int = 14) -> Union[float, InsufficientData]:
    df = _as_frame(candles)
    required = williams_r_min_length(period)
    if len(df) < required:
        return InsufficientData(f"williams_r_{period}", required, len(df))
    return _last(williams_r_series(df, period), f"williams_r_{period}", required)


def compute_snapshot(candles: CandleInput, symbol: Optional[str] = None) -> IndicatorSnapshot:
    """Every indicator the strategies use, for the latest candle of the window."""
    df = _as_frame(candles)
    insufficient = []

    def scalar(name: str, result) -> Optional[float]:
        if isinstance(result, InsufficientData):
            insufficient.append(name)
            return None
        return result

    values = {
        "sma_20": scalar("sma_20", sma(df, 20)),
        "sma_50": scalar("sma_50", sma(df, 50)),
        "ema_5": scalar("ema_5", ema(df, 5)),
        "ema_9": scalar("ema_9", ema(df, 9)),
        "ema_13": scalar("ema_13", ema(df, 13)),
        "ema_21": scalar("ema_21", ema(df, 21)),
        "rsi_14": scalar("rsi_14", rsi(df, 14)),
        "atr_5": scalar("atr_5", atr(df, 5)),
        "cci_20": scalar("cci_20", cci(df, 20)),
        "williams_r": scalar("williams_r", williams_r(df, 14)),
    }

    macd_result = macd(df)
    if isinstance(macd_result, InsufficientData):
        insufficient.append("macd")
    else:
        values.update(macd=macd_result.macd, macd_signal=macd_result.signal, macd_histogram=macd_result.histogram)

    bands = bollinger_bands(df, 21, 1.0)
    if isinstance(bands, InsufficientData):
        insufficient.append("bollinger")
    else:
        values.update(bb_upper=bands.upper, bb_middle=bands.middle, bb_lower=bands.lower)

    stoch = stochastic(df, 14, 3)
    if isinstance(stoch, InsufficientData):
        insufficient.append("stochastic")
    else:
        values.update(stoch_k=stoch.k, stoch_d=stoch.d)

    adx_result = adx(df, 14)
    if isinstance(adx_result, InsufficientData):
        insufficient.append("adx")
    else:
        values.update(adx=adx_result.adx, plus_di=adx_result.plus_di, minus_di=adx_result.minus_di)

    latest_close = float(df["close"].iloc[-1]) if len(df) else None
    latest_volume = float(df["volume"].iloc[-1]) if len(df) else None
    latest_time = df.index[-1].to_pydatetime() if len(df) and isinstance(df.index, pd.DatetimeIndex) else None

    return IndicatorSnapshot(
        symbol=symbol,
        timestamp=latest_time,
        candle_count=len(df),
        price=latest_close,
        volume=latest_volume,
        insufficient=insufficient,
        **values,
    )
