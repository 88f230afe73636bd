"""
Market data sources and tracked symbol selection.
"""

from .candle_source import CandleSource, CcxtCandleSource
from .symbols import SUPPORTED_PAIRS, SymbolSelector

__all__ = [
    "CandleSource",
    "CcxtCandleSource",
    "SUPPORTED_PAIRS",
    "SymbolSelector",
]
