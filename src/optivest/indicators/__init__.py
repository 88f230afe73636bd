"""
Technical indicators over candle windows.
"""

from .engine import (
    ADXResult,
    BollingerBands,
    InsufficientData,
    MACDResult,
    StochasticResult,
    adx,
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

__all__ = [
    "ADXResult",
    "BollingerBands",
    "InsufficientData",
    "MACDResult",
    "StochasticResult",
    "adx",
    "atr",
    "bollinger_bands",
    "candles_to_frame",
    "cci",
    "compute_snapshot",
    "ema",
    "macd",
    "rsi",
    "sma",
    "stochastic",
    "williams_r",
]
