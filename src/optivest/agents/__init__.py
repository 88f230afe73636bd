"""
Optivest agents: long-running background components of the engine.
"""

from .base import AgentHealth, AgentState, AgentType, BaseAgent
from .price_feed import FeedStatus, PriceFeed
from .scheduler import StrategyScheduler, TickReport

__all__ = [
    "BaseAgent",
    "AgentState",
    "AgentType",
    "AgentHealth",
    "PriceFeed",
    "FeedStatus",
    "StrategyScheduler",
    "TickReport",
]
