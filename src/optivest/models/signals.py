"""
Signal Models

Data types flowing from the indicator engine through the strategy
evaluators to the fusion voter:
- SignalDirection: BUY / SELL / HOLD
- IndicatorSnapshot: indicator values for the latest candle of a window
- StrategySignal: the verdict of one strategy evaluator
- FusedDecision: the weighted vote across evaluators
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class SignalDirection(str, Enum):
    """Trading signal direction."""

    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class IndicatorSnapshot(BaseModel):
    """
    Indicator values for the most recent candle of a window.

    A value of None means the window was too short for that indicator;
    its name is then listed in ``insufficient``.
    """

    symbol: Optional[str] = None
    timestamp: Optional[datetime] = None
    candle_count: int = Field(default=0, ge=0)
    price: Optional[float] = None
    volume: Optional[float] = None

    sma_20: Optional[float] = None
    sma_50: Optional[float] = None
    ema_5: Optional[float] = None
    ema_9: Optional[float] = None
    ema_13: Optional[float] = None
    ema_21: Optional[float] = None
    rsi_14: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None
    bb_upper: Optional[float] = None
    bb_middle: Optional[float] = None
    bb_lower: Optional[float] = None
    atr_5: Optional[float] = None
    stoch_k: Optional[float] = None
    stoch_d: Optional[float] = None
    adx: Optional[float] = None
    plus_di: Optional[float] = None
    minus_di: Optional[float] = None
    cci_20: Optional[float] = None
    williams_r: Optional[float] = None

    insufficient: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def is_available(self, name: str) -> bool:
        return getattr(self, name, None) is not None


class StrategySignal(BaseModel):
    """The verdict of one strategy evaluator."""

    strategy: str = Field(..., min_length=1)
    signal: SignalDirection = Field(default=SignalDirection.HOLD)
    confidence: float = Field(default=0.0, description="Clamped to [0, 1]")
    rationale: str = Field(default="")
    support: Optional[float] = Field(default=None, description="Nearest support level")
    resistance: Optional[float] = Field(default=None, description="Nearest resistance level")
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @field_validator('confidence', mode='before')
    @classmethod
    def clamp_confidence(cls, v) -> float:
        v = float(v)
        if v != v:  # NaN
            return 0.0
        return min(1.0, max(0.0, v))

    @classmethod
    def hold(cls, strategy: str, rationale: str, **kwargs) -> "StrategySignal":
        return cls(strategy=strategy, signal=SignalDirection.HOLD, confidence=0.0, rationale=rationale, **kwargs)


class StrategyContribution(BaseModel):
    """How one strategy contributed to a fused decision."""

    strategy: str
    signal: SignalDirection
    confidence: float
    weight: float

    model_config = ConfigDict(frozen=True)

    @computed_field
    @property
    def weighted_score(self) -> float:
        if self.signal == SignalDirection.HOLD:
            return 0.0
        return self.confidence * self.weight


class FusedDecision(BaseModel):
    """Weighted vote across strategy signals."""

    signal: SignalDirection
    confidence: float = Field(..., ge=0.0, le=1.0)
    buy_strength: float = Field(default=0.0, ge=0.0)
    sell_strength: float = Field(default=0.0, ge=0.0)
    strategy_set: str = Field(default="")
    breakdown: List[StrategyContribution] = Field(default_factory=list)
    support: Optional[float] = None
    resistance: Optional[float] = None
    timestamp: Optional[datetime] = Field(default=None, description="Time of the candle the vote is based on")

    model_config = ConfigDict(frozen=True)

    @property
    def is_actionable(self) -> bool:
        return self.signal != SignalDirection.HOLD
