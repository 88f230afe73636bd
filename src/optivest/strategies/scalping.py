"""
Scalping strategy: EMA(5)/EMA(13) crossovers confirmed by stochastic
crossovers in the extreme zones, boosted by volume spikes.
"""

import pandas as pd

from ..indicators.engine import ema_series, stochastic_frame
from ..models.signals import IndicatorSnapshot, SignalDirection, StrategySignal
from .base import StrategyEvaluator


class ScalpingStrategy(StrategyEvaluator):
    """Short-horizon crossover strategy."""

    name = "scalping"

    def __init__(
        self,
        fast_period: int = 5,
        slow_period: int = 13,
        stoch_k: int = 14,
        stoch_d: int = 3,
        oversold: float = 25.0,
        overbought: float = 75.0,
        volume_lookback: int = 20,
        volume_spike_ratio: float = 2.0,
        ema_weight: float = 0.4,
        stoch_weight: float = 0.3,
        max_volume_boost: float = 0.3,
        min_confidence: float = 0.6,
    ):
        self.fast_period = fast_period
        self.slow_period = slow_period
        self.stoch_k = stoch_k
        self.stoch_d = stoch_d
        self.oversold = oversold
        self.overbought = overbought
        self.volume_lookback = volume_lookback
        self.volume_spike_ratio = volume_spike_ratio
        self.ema_weight = ema_weight
        self.stoch_weight = stoch_weight
        self.max_volume_boost = max_volume_boost
        self.min_confidence = min_confidence

    @property
    def min_length(self) -> int:
        # One extra bar for the previous values a crossover compares against
        return max(self.fast_period, self.slow_period) + 1

    def _ema_cross(self, df: pd.DataFrame) -> int:
        fast = ema_series(df["close"], self.fast_period)
        slow = ema_series(df["close"], self.slow_period)
        prev_fast, prev_slow = fast.iloc[-2], slow.iloc[-2]
        cur_fast, cur_slow = fast.iloc[-1], slow.iloc[-1]
        if pd.isna(prev_fast) or pd.isna(prev_slow):
            return 0
        if prev_fast <= prev_slow and cur_fast > cur_slow:
            return 1
        if prev_fast >= prev_slow and cur_fast < cur_slow:
            return -1
        return 0

    def _stochastic_cross(self, df: pd.DataFrame) -> int:
        if len(df) < self.stoch_k + self.stoch_d:
            return 0
        frame = stochastic_frame(df, self.stoch_k, self.stoch_d)
        prev_k, prev_d = frame["k"].iloc[-2], frame["d"].iloc[-2]
        k, d = frame["k"].iloc[-1], frame["d"].iloc[-1]
        if pd.isna(prev_k) or pd.isna(prev_d):
            return 0
        if k < self.oversold and d < self.oversold and prev_k <= prev_d and k > d:
            return 1
        if k > self.overbought and d > self.overbought and prev_k >= prev_d and k < d:
            return -1
        return 0

    def volume_ratio(self, df: pd.DataFrame) -> float:
        """Current volume over the average of the preceding bars."""
        if len(df) < self.volume_lookback + 1:
            return 0.0
        average = df["volume"].iloc[-self.volume_lookback - 1:-1].mean()
        if average <= 0:
            return 0.0
        return float(df["volume"].iloc[-1] / average)

    def evaluate(self, df: pd.DataFrame, snapshot: IndicatorSnapshot) -> StrategySignal:
        if len(df) < self.min_length:
            return self.hold(f"Insufficient data: {len(df)} candles, need {self.min_length}")

        buy_score = 0.0
        sell_score = 0.0
        reasons = []

        ema_cross = self._ema_cross(df)
        if ema_cross > 0:
            buy_score += self.ema_weight
            reasons.append("EMA golden cross")
        elif ema_cross < 0:
            sell_score += self.ema_weight
            reasons.append("EMA death cross")

        stoch_cross = self._stochastic_cross(df)
        if stoch_cross > 0:
            buy_score += self.stoch_weight
            reasons.append("stochastic oversold cross up")
        elif stoch_cross < 0:
            sell_score += self.stoch_weight
            reasons.append("stochastic overbought cross down")

        ratio = self.volume_ratio(df)
        boost = 0.0
        if ratio > self.volume_spike_ratio:
            boost = min(self.max_volume_boost, 0.15 * (ratio - 1))
            # A spike only strengthens a side that already has a reason to trade
            if buy_score > sell_score:
                buy_score += boost
                reasons.append(f"volume spike x{ratio:.1f}")
            elif sell_score > buy_score:
                sell_score += boost
                reasons.append(f"volume spike x{ratio:.1f}")

        details = {
            "ema_cross": ema_cross,
            "stochastic_cross": stoch_cross,
            "volume_ratio": ratio,
            "buy_score": buy_score,
            "sell_score": sell_score,
        }

        if buy_score > sell_score:
            direction, score = SignalDirection.BUY, buy_score
        elif sell_score > buy_score:
            direction, score = SignalDirection.SELL, sell_score
        else:
            return self.hold("No crossover", details=details)

        if score < self.min_confidence:
            return self.hold(f"Weak setup ({', '.join(reasons)})", details=details)

        return StrategySignal(
            strategy=self.name,
            signal=direction,
            confidence=score,
            rationale=", ".join(reasons),
            details=details,
        )
