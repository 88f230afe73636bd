"""
Error taxonomy for the Optivest paper trading engine.

Ledger and order errors are raised synchronously to the caller. Feed and
persistence errors are handled inside the long-running components and
surface through logs and component state.
"""

from decimal import Decimal
from typing import Optional


class OptivestError(RuntimeError):
    """Base class for every error raised by the engine."""


class InsufficientFunds(OptivestError):
    """Raised when a BUY needs more quote currency than the ledger holds."""

    def __init__(self, currency: str, required: Decimal, available: Decimal):
        self.currency = currency
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient {currency} balance: required {required}, available {available}"
        )


class InsufficientHoldings(OptivestError):
    """Raised when a SELL needs more of an asset than the ledger holds."""

    def __init__(self, asset: str, required: Decimal, available: Decimal):
        self.asset = asset
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient {asset} holdings: required {required}, available {available}"
        )


class InvalidOrder(OptivestError):
    """Raised for malformed trades and orders."""


class DataUnavailable(OptivestError):
    """Raised when candles or a price cannot be obtained from any source."""

    def __init__(self, message: str, symbol: Optional[str] = None):
        self.symbol = symbol
        super().__init__(message)


class FeedDisconnected(OptivestError):
    """Raised inside the price feed when the stream drops or goes silent."""


class PersistenceFailure(OptivestError):
    """Raised when a ledger snapshot cannot be written or read."""


class StateLocked(OptivestError):
    """Raised when another live process holds the ledger state."""

    def __init__(self, path: str, pid: int):
        self.path = path
        self.pid = pid
        super().__init__(f"Ledger state {path} is in use by process {pid}; stop it first")
