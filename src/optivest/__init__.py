"""
Optivest: Crypto Paper Trading Engine

Simulated trading of USDT pairs driven by a weighted vote of technical
strategies, with virtual balances, stop-loss / take-profit orders and a
live Binance price feed.
"""

__version__ = "0.1.0"
__author__ = "Optivest Team"
__description__ = "Crypto Paper Trading Engine"

# Package-level imports for convenience
from .config import Config
from .logger import get_logger

__all__ = ["Config", "get_logger", "__version__"]
