"""
Optivest Paper Trading

Virtual balances, trade history and stop-loss / take-profit orders for a
simulated account. The ``PaperTradingEngine`` facade lives in
``optivest.paper_trading.engine``.
"""

from .ledger import LedgerPerformance, PositionLedger
from .orders import OrderCheckResult, OrderManager
from .persistence import SnapshotStore
from .reports import BalanceReport, EngineStatus, PerformanceReport, RiskAnalysis, RiskLevel

__all__ = [
    "PositionLedger",
    "LedgerPerformance",
    "OrderManager",
    "OrderCheckResult",
    "SnapshotStore",
    "BalanceReport",
    "EngineStatus",
    "PerformanceReport",
    "RiskAnalysis",
    "RiskLevel",
]
