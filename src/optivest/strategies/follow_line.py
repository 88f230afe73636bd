"""
Follow Line trend strategy.

Bollinger bands (21, 1.0) classify each bar as a bullish breakout
(close above the upper band), a bearish breakout (close below the lower
band) or neutral. On a breakout the follow line moves to ``low - ATR``
(bullish) or ``high + ATR`` (bearish), ratcheted so a bullish line never
drops below its previous value and a bearish line never rises above it.
Neutral bars carry the previous line forward. The trend is the direction
the line last moved in.

The line is rebuilt bar by bar over the whole window on every call, so
the evaluator keeps no memory between ticks.
"""

import math
from typing import Optional

import numpy as np
import pandas as pd

from ..indicators.engine import atr_min_length, atr_series, bollinger_frame, bollinger_min_length
from ..models.signals import IndicatorSnapshot, SignalDirection, StrategySignal
from .base import StrategyEvaluator


BULLISH = 1
BEARISH = -1
NEUTRAL = 0


class FollowLineStrategy(StrategyEvaluator):
    """ATR trailing line driven by Bollinger band breakouts."""

    name = "follow_line"

    def __init__(
        self,
        atr_period: int = 5,
        bb_period: int = 21,
        bb_deviation: float = 1.0,
        base_confidence: float = 0.6,
        flip_confidence: float = 0.8,
        neutral_confidence: float = 0.1,
    ):
        self.atr_period = atr_period
        self.bb_period = bb_period
        self.bb_deviation = bb_deviation
        self.base_confidence = base_confidence
        self.flip_confidence = flip_confidence
        self.neutral_confidence = neutral_confidence

    @property
    def min_length(self) -> int:
        return max(atr_min_length(self.atr_period), bollinger_min_length(self.bb_period))

    def follow_line_frame(self, df: pd.DataFrame) -> pd.DataFrame:
        """Per-bar band signal, follow line, ATR and trend."""
        bands = bollinger_frame(df["close"], self.bb_period, self.bb_deviation)
        atr_values = atr_series(df, self.atr_period)

        closes = df["close"].to_numpy(dtype=float)
        highs = df["high"].to_numpy(dtype=float)
        lows = df["low"].to_numpy(dtype=float)
        uppers = bands["upper"].to_numpy(dtype=float)
        lowers = bands["lower"].to_numpy(dtype=float)
        atrs = atr_values.to_numpy(dtype=float)

        signals = np.zeros(len(df), dtype=int)
        lines = np.full(len(df), np.nan)
        trends = np.zeros(len(df), dtype=int)

        line: Optional[float] = None
        trend = NEUTRAL
        for i in range(len(df)):
            if math.isnan(uppers[i]) or math.isnan(atrs[i]):
                continue

            previous_line = line
            if closes[i] > uppers[i]:
                signals[i] = BULLISH
                candidate = lows[i] - atrs[i]
                if previous_line is not None and candidate < previous_line:
                    candidate = previous_line
                line = candidate
            elif closes[i] < lowers[i]:
                signals[i] = BEARISH
                candidate = highs[i] + atrs[i]
                if previous_line is not None and candidate > previous_line:
                    candidate = previous_line
                line = candidate

            if line is not None and previous_line is not None:
                if line > previous_line:
                    trend = BULLISH
                elif line < previous_line:
                    trend = BEARISH

            if line is not None:
                lines[i] = line
            trends[i] = trend

        return pd.DataFrame(
            {"bb_signal": signals, "line": lines, "atr": atrs, "trend": trends},
            index=df.index,
        )

    def evaluate(self, df: pd.DataFrame, snapshot: IndicatorSnapshot) -> StrategySignal:
        if len(df) < self.min_length:
            return self.hold(f"Insufficient data: {len(df)} candles, need {self.min_length}")

        frame = self.follow_line_frame(df)
        last = frame.iloc[-1]
        previous_trend = int(frame["trend"].iloc[-2]) if len(frame) > 1 else NEUTRAL
        bb_signal = int(last["bb_signal"])
        trend = int(last["trend"])
        line = None if pd.isna(last["line"]) else float(last["line"])
        atr_value = float(last["atr"])

        support = line - atr_value if line is not None else None
        resistance = line + atr_value if line is not None else None
        details = {
            "bb_signal": bb_signal,
            "follow_line": line,
            "atr": atr_value,
            "trend": trend,
            "previous_trend": previous_trend,
        }

        if bb_signal == NEUTRAL:
            return StrategySignal(
                strategy=self.name,
                signal=SignalDirection.HOLD,
                confidence=self.neutral_confidence,
                rationale="Close inside Bollinger bands",
                support=support,
                resistance=resistance,
                details=details,
            )

        direction = SignalDirection.BUY if bb_signal == BULLISH else SignalDirection.SELL
        flipped = trend == bb_signal and previous_trend != trend
        confidence = self.flip_confidence if flipped else self.base_confidence
        side = "upper" if bb_signal == BULLISH else "lower"
        rationale = f"Close beyond {side} band"
        if flipped:
            rationale += ", follow line trend turned"

        return StrategySignal(
            strategy=self.name,
            signal=direction,
            confidence=confidence,
            rationale=rationale,
            support=support,
            resistance=resistance,
            details=details,
        )
