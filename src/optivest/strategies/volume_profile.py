"""
Volume profile strategy.

Traded volume over the recent window is bucketed by close price. The
busiest bucket is the point of control (POC) and the five busiest are
high-volume zones acting as support below the price and resistance
above it.
"""

import math
from typing import List, Optional

import numpy as np
import pandas as pd
from pydantic import BaseModel, Field

from ..models.signals import IndicatorSnapshot, SignalDirection, StrategySignal
from .base import StrategyEvaluator


def price_step(price: float) -> float:
    """Bucket width: the third significant digit of the price."""
    if price <= 0:
        raise ValueError("price must be positive")
    return 10 ** (math.floor(math.log10(price)) - 2)


class VolumeProfile(BaseModel):
    """Volume distribution of a candle window."""

    step: float
    poc: float
    zones: List[float] = Field(default_factory=list, description="High-volume prices, busiest first")
    support: Optional[float] = None
    resistance: Optional[float] = None


def build_profile(df: pd.DataFrame, price: float, zone_count: int = 5) -> Optional[VolumeProfile]:
    """Bucket volume by rounded close; None when the window traded nothing."""
    if df.empty or df["volume"].sum() <= 0:
        return None

    step = price_step(price)
    buckets = np.round(df["close"].to_numpy(dtype=float) / step).astype(np.int64)
    volume_by_bucket = (
        pd.Series(df["volume"].to_numpy(dtype=float), index=buckets)
        .groupby(level=0)
        .sum()
    )
    # Busiest first; equal volume resolves to the lower price
    ranked = sorted(volume_by_bucket.items(), key=lambda item: (-item[1], item[0]))
    ranked = [(bucket, volume) for bucket, volume in ranked if volume > 0]
    if not ranked:
        return None

    zones = [float(bucket * step) for bucket, _ in ranked[:zone_count]]
    below = [zone for zone in zones if zone <= price]
    above = [zone for zone in zones if zone > price]

    return VolumeProfile(
        step=step,
        poc=float(ranked[0][0] * step),
        zones=zones,
        support=max(below) if below else None,
        resistance=min(above) if above else None,
    )


class VolumeProfileStrategy(StrategyEvaluator):
    """Trades reactions at high-volume price zones."""

    name = "volume_profile"

    def __init__(
        self,
        lookback: int = 100,
        min_candles: int = 20,
        zone_count: int = 5,
        zone_proximity: float = 0.01,
        poc_proximity: float = 0.005,
        base_confidence: float = 0.7,
        poc_bonus: float = 0.2,
    ):
        self.lookback = lookback
        self.min_candles = min_candles
        self.zone_count = zone_count
        self.zone_proximity = zone_proximity
        self.poc_proximity = poc_proximity
        self.base_confidence = base_confidence
        self.poc_bonus = poc_bonus

    def evaluate(self, df: pd.DataFrame, snapshot: IndicatorSnapshot) -> StrategySignal:
        if len(df) < self.min_candles:
            return self.hold(f"Insufficient data: {len(df)} candles, need {self.min_candles}")

        window = df.tail(self.lookback)
        price = float(window["close"].iloc[-1])
        profile = build_profile(window, price, self.zone_count)
        if profile is None:
            return self.hold("No traded volume in window")

        details = profile.model_dump()
        near_poc = abs(price - profile.poc) / price <= self.poc_proximity

        if profile.support is not None and (price - profile.support) / price <= self.zone_proximity:
            direction = SignalDirection.BUY
            rationale = f"Price near high-volume support {profile.support:g}"
        elif profile.resistance is not None and (profile.resistance - price) / price <= self.zone_proximity:
            direction = SignalDirection.SELL
            rationale = f"Price near high-volume resistance {profile.resistance:g}"
        else:
            return self.hold(
                "Price away from high-volume zones",
                support=profile.support,
                resistance=profile.resistance,
                details=details,
            )

        confidence = self.base_confidence
        if near_poc:
            confidence += self.poc_bonus
            rationale += " and point of control"

        return StrategySignal(
            strategy=self.name,
            signal=direction,
            confidence=confidence,
            rationale=rationale,
            support=profile.support,
            resistance=profile.resistance,
            details=details,
        )
