"""
Optivest data models.

Market data, strategy signals and the simulated account's trading records.
"""

from .market_data import (
    Candle,
    PriceSeries,
    PriceTick,
    Timeframe,
    normalize_symbol,
    split_symbol,
    stream_name,
)
from .signals import (
    FusedDecision,
    IndicatorSnapshot,
    SignalDirection,
    StrategyContribution,
    StrategySignal,
)
from .trading import (
    LedgerSnapshot,
    Order,
    OrderKind,
    OrderSide,
    OrderStatus,
    Position,
    TradeRecord,
    TradeSource,
)

__all__ = [
    # Market data
    "Candle",
    "PriceSeries",
    "PriceTick",
    "Timeframe",
    "normalize_symbol",
    "split_symbol",
    "stream_name",
    # Signals
    "FusedDecision",
    "IndicatorSnapshot",
    "SignalDirection",
    "StrategyContribution",
    "StrategySignal",
    # Trading
    "LedgerSnapshot",
    "Order",
    "OrderKind",
    "OrderSide",
    "OrderStatus",
    "Position",
    "TradeRecord",
    "TradeSource",
]
