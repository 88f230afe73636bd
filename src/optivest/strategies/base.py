"""
Strategy evaluator interface.

An evaluator looks at a candle window (as an OHLCV DataFrame) plus the
precomputed indicator snapshot and returns a single StrategySignal. It
holds no state between calls: identical input gives identical output.
"""

from abc import ABC, abstractmethod

import pandas as pd

from ..models.signals import IndicatorSnapshot, StrategySignal


class StrategyEvaluator(ABC):
    """Base class for strategy evaluators."""

    name: str = "strategy"

    @abstractmethod
    def evaluate(self, df: pd.DataFrame, snapshot: IndicatorSnapshot) -> StrategySignal:
        """Evaluate the latest candle of ``df``."""

    def hold(self, rationale: str, **kwargs) -> StrategySignal:
        return StrategySignal.hold(self.name, rationale, **kwargs)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"
