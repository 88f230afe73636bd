"""
Momentum strategy: CCI and Williams %R extremes, scaled by ADX trend
direction.
"""

import pandas as pd

from ..models.signals import IndicatorSnapshot, SignalDirection, StrategySignal
from .base import StrategyEvaluator


class MomentumStrategy(StrategyEvaluator):
    """Oscillator extremes weighed against the ADX trend."""

    name = "momentum"

    def __init__(
        self,
        cci_threshold: float = 150.0,
        cci_weight: float = 0.6,
        williams_oversold: float = -70.0,
        williams_overbought: float = -30.0,
        williams_weight: float = 0.5,
        weak_trend: float = 20.0,
        strong_trend: float = 25.0,
        agree_multiplier: float = 1.2,
        conflict_multiplier: float = 0.7,
    ):
        self.cci_threshold = cci_threshold
        self.cci_weight = cci_weight
        self.williams_oversold = williams_oversold
        self.williams_overbought = williams_overbought
        self.williams_weight = williams_weight
        self.weak_trend = weak_trend
        self.strong_trend = strong_trend
        self.agree_multiplier = agree_multiplier
        self.conflict_multiplier = conflict_multiplier

    def trend_strength(self, adx_value: float) -> str:
        if adx_value < self.weak_trend:
            return "weak"
        if adx_value < self.strong_trend:
            return "moderate"
        return "strong"

    @staticmethod
    def trend_direction(plus_di: float, minus_di: float) -> SignalDirection:
        if plus_di > minus_di:
            return SignalDirection.BUY
        if minus_di > plus_di:
            return SignalDirection.SELL
        return SignalDirection.HOLD

    def evaluate(self, df: pd.DataFrame, snapshot: IndicatorSnapshot) -> StrategySignal:
        if snapshot.cci_20 is None and snapshot.williams_r is None:
            return self.hold("Insufficient data for CCI and Williams %R")

        buy_score = 0.0
        sell_score = 0.0
        reasons = []

        if snapshot.cci_20 is not None:
            if snapshot.cci_20 < -self.cci_threshold:
                buy_score += self.cci_weight
                reasons.append(f"CCI {snapshot.cci_20:.0f} oversold")
            elif snapshot.cci_20 > self.cci_threshold:
                sell_score += self.cci_weight
                reasons.append(f"CCI {snapshot.cci_20:.0f} overbought")

        if snapshot.williams_r is not None:
            if snapshot.williams_r < self.williams_oversold:
                buy_score += self.williams_weight
                reasons.append(f"Williams %R {snapshot.williams_r:.0f} oversold")
            elif snapshot.williams_r > self.williams_overbought:
                sell_score += self.williams_weight
                reasons.append(f"Williams %R {snapshot.williams_r:.0f} overbought")

        details = {
            "cci": snapshot.cci_20,
            "williams_r": snapshot.williams_r,
            "adx": snapshot.adx,
            "buy_score": buy_score,
            "sell_score": sell_score,
        }

        if buy_score > sell_score:
            direction, confidence = SignalDirection.BUY, buy_score
        elif sell_score > buy_score:
            direction, confidence = SignalDirection.SELL, sell_score
        else:
            return self.hold("No momentum extreme", details=details)

        if snapshot.adx is not None and snapshot.plus_di is not None and snapshot.minus_di is not None:
            trend = self.trend_direction(snapshot.plus_di, snapshot.minus_di)
            strength = self.trend_strength(snapshot.adx)
            details.update(trend=trend.value, trend_strength=strength)
            if trend == direction:
                confidence *= self.agree_multiplier
                reasons.append(f"{strength} ADX trend agrees")
            elif trend != SignalDirection.HOLD:
                confidence *= self.conflict_multiplier
                reasons.append(f"{strength} ADX trend disagrees")

        return StrategySignal(
            strategy=self.name,
            signal=direction,
            confidence=min(1.0, max(0.0, confidence)),
            rationale=", ".join(reasons),
            details=details,
        )
