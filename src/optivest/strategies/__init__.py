"""
Optivest trading strategies.

Four stateless evaluators and the weighted vote that fuses them.
"""

from .base import StrategyEvaluator
from .follow_line import FollowLineStrategy
from .fusion import (
    STRATEGY_SETS,
    FusionResult,
    StrategyFusion,
    StrategySet,
    fuse_signals,
    get_strategy_set,
)
from .momentum import MomentumStrategy
from .scalping import ScalpingStrategy
from .volume_profile import VolumeProfileStrategy, build_profile

__all__ = [
    "StrategyEvaluator",
    "FollowLineStrategy",
    "ScalpingStrategy",
    "VolumeProfileStrategy",
    "MomentumStrategy",
    "build_profile",
    "STRATEGY_SETS",
    "FusionResult",
    "StrategyFusion",
    "StrategySet",
    "fuse_signals",
    "get_strategy_set",
]
