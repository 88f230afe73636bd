"""
Strategy Fusion

Runs the evaluators of a strategy set over one candle window and combines
their signals with a weighted vote:

    buy_strength  = sum(confidence * weight for BUY signals)  / total_weight
    sell_strength = sum(confidence * weight for SELL signals) / total_weight

where ``total_weight`` sums the weights of the non-HOLD signals only. The
side with the larger strength wins if it exceeds the decision threshold;
anything else is HOLD. The vote is a pure function of the signals.

Strategy sets are named and versioned so the evaluator mix is a
configuration choice rather than a code fork.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from ..indicators.engine import candles_to_frame, compute_snapshot
from ..logger import get_logger
from ..models.market_data import Candle
from ..models.signals import (
    FusedDecision,
    IndicatorSnapshot,
    SignalDirection,
    StrategyContribution,
    StrategySignal,
)
from .base import StrategyEvaluator
from .follow_line import FollowLineStrategy
from .momentum import MomentumStrategy
from .scalping import ScalpingStrategy
from .volume_profile import VolumeProfileStrategy


logger = get_logger(__name__)

DECISION_THRESHOLD = 0.5

EVALUATORS: Dict[str, Callable[[], StrategyEvaluator]] = {
    FollowLineStrategy.name: FollowLineStrategy,
    ScalpingStrategy.name: ScalpingStrategy,
    VolumeProfileStrategy.name: VolumeProfileStrategy,
    MomentumStrategy.name: MomentumStrategy,
}


@dataclass(frozen=True)
class StrategySet:
    """A named, versioned mix of evaluators and their vote weights."""

    name: str
    version: int
    weights: Mapping[str, float]
    description: str = ""

    def build(self) -> List[StrategyEvaluator]:
        return [EVALUATORS[strategy]() for strategy in self.weights]


STRATEGY_SETS: Dict[str, StrategySet] = {
    "fusion_v2": StrategySet(
        name="fusion_v2",
        version=2,
        weights={
            "follow_line": 0.30,
            "scalping": 0.25,
            "volume_profile": 0.25,
            "momentum": 0.20,
        },
        description="Trend-follow, scalping, volume profile and momentum vote",
    ),
    "follow_line_v1": StrategySet(
        name="follow_line_v1",
        version=1,
        weights={"follow_line": 1.0},
        description="Follow line trend strategy on its own",
    ),
}


def get_strategy_set(name: str) -> StrategySet:
    try:
        return STRATEGY_SETS[name]
    except KeyError:
        raise ValueError(
            f"Unknown strategy set '{name}'. Available: {', '.join(sorted(STRATEGY_SETS))}"
        ) from None


def fuse_signals(
    signals: Sequence[StrategySignal],
    weights: Mapping[str, float],
    strategy_set: str = "",
    threshold: float = DECISION_THRESHOLD,
    timestamp: Optional[datetime] = None,
) -> FusedDecision:
    """Weighted vote over strategy signals. Signals without a weight are ignored."""
    buy_score = 0.0
    sell_score = 0.0
    total_weight = 0.0
    breakdown = []

    for signal in signals:
        weight = weights.get(signal.strategy)
        if weight is None:
            continue
        breakdown.append(StrategyContribution(
            strategy=signal.strategy,
            signal=signal.signal,
            confidence=signal.confidence,
            weight=weight,
        ))
        if signal.signal == SignalDirection.HOLD:
            continue
        total_weight += weight
        if signal.signal == SignalDirection.BUY:
            buy_score += signal.confidence * weight
        else:
            sell_score += signal.confidence * weight

    buy_strength = buy_score / total_weight if total_weight > 0 else 0.0
    sell_strength = sell_score / total_weight if total_weight > 0 else 0.0

    if buy_strength > sell_strength and buy_strength > threshold:
        direction, confidence = SignalDirection.BUY, buy_strength
    elif sell_strength > buy_strength and sell_strength > threshold:
        direction, confidence = SignalDirection.SELL, sell_strength
    else:
        direction, confidence = SignalDirection.HOLD, 0.0

    support, resistance = _levels(signals, weights)

    return FusedDecision(
        signal=direction,
        confidence=min(1.0, confidence),
        buy_strength=buy_strength,
        sell_strength=sell_strength,
        strategy_set=strategy_set,
        breakdown=breakdown,
        support=support,
        resistance=resistance,
        timestamp=timestamp,
    )


def _levels(
    signals: Sequence[StrategySignal], weights: Mapping[str, float]
) -> Tuple[Optional[float], Optional[float]]:
    """Support/resistance from the heaviest-weighted signal that reports them."""
    ranked = sorted(
        (s for s in signals if s.strategy in weights),
        key=lambda s: -weights[s.strategy],
    )
    support = next((s.support for s in ranked if s.support is not None), None)
    resistance = next((s.resistance for s in ranked if s.resistance is not None), None)
    return support, resistance


@dataclass
class FusionResult:
    """Everything computed for one symbol on one tick."""

    symbol: Optional[str]
    snapshot: IndicatorSnapshot
    signals: List[StrategySignal] = field(default_factory=list)
    decision: Optional[FusedDecision] = None


class StrategyFusion:
    """Evaluates a strategy set over candle windows and fuses the result."""

    def __init__(self, strategy_set: str = "fusion_v2", threshold: float = DECISION_THRESHOLD):
        self.strategy_set = get_strategy_set(strategy_set)
        self.threshold = threshold
        self.evaluators = self.strategy_set.build()

    @property
    def weights(self) -> Mapping[str, float]:
        return self.strategy_set.weights

    def evaluate(self, candles: Sequence[Candle], symbol: Optional[str] = None) -> FusionResult:
        df = candles_to_frame(candles)
        snapshot = compute_snapshot(df, symbol=symbol)
        return self.evaluate_frame(df, snapshot, symbol)

    def evaluate_frame(
        self, df: pd.DataFrame, snapshot: IndicatorSnapshot, symbol: Optional[str] = None
    ) -> FusionResult:
        signals = []
        for evaluator in self.evaluators:
            try:
                signals.append(evaluator.evaluate(df, snapshot))
            except (ValueError, KeyError, IndexError, ZeroDivisionError) as e:
                logger.error(f"Strategy {evaluator.name} failed for {symbol}: {e}")
                signals.append(evaluator.hold(f"Evaluation error: {e}"))

        decision = fuse_signals(
            signals,
            self.weights,
            strategy_set=self.strategy_set.name,
            threshold=self.threshold,
            timestamp=snapshot.timestamp,
        )
        logger.debug(
            f"{symbol}: {decision.signal.value} "
            f"(buy={decision.buy_strength:.3f}, sell={decision.sell_strength:.3f})"
        )
        return FusionResult(symbol=symbol, snapshot=snapshot, signals=signals, decision=decision)
