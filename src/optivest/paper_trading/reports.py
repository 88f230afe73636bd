"""
Report models returned by the engine facade.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ..models.signals import SignalDirection


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Holding(BaseModel):
    """One asset balance valued at the current price."""

    currency: str
    symbol: str
    amount: Decimal
    price: Optional[Decimal] = None
    value: Decimal = Decimal("0")
    priced: bool = Field(default=True, description="False when valued at average cost for lack of a price")
    average_cost: Decimal = Decimal("0")
    unrealized_pnl: Optional[Decimal] = None


class BalanceReport(BaseModel):
    """Balances plus their total value in the quote currency."""

    quote_currency: str
    balances: Dict[str, Decimal]
    available_balance: Decimal
    holdings: List[Holding] = Field(default_factory=list)
    initial_balance: Decimal

    @computed_field
    @property
    def total_value(self) -> Decimal:
        return self.available_balance + sum((h.value for h in self.holdings), Decimal("0"))

    @computed_field
    @property
    def total_pnl(self) -> Decimal:
        return self.total_value - self.initial_balance

    @computed_field
    @property
    def partial(self) -> bool:
        return any(not h.priced for h in self.holdings)


class PerformanceReport(BaseModel):
    """Account performance against the starting balance."""

    total_value: Decimal
    initial_balance: Decimal
    total_trades: int
    buy_trades: int
    sell_trades: int
    success_rate: float = Field(..., description="Percentage of sells closed in profit")
    realized_pnl: Decimal
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @computed_field
    @property
    def profit(self) -> Decimal:
        return self.total_value - self.initial_balance

    @computed_field
    @property
    def profit_percent(self) -> Decimal:
        return (self.total_value - self.initial_balance) / self.initial_balance * Decimal("100")


class RiskAnalysis(BaseModel):
    """Concentration of the account outside the quote currency."""

    total_value: Decimal
    quote_percent: Decimal
    risk_level: RiskLevel
    recommendation: str

    @computed_field
    @property
    def diversification(self) -> Decimal:
        return Decimal("100") - self.quote_percent

    @classmethod
    def from_values(cls, quote_balance: Decimal, total_value: Decimal) -> "RiskAnalysis":
        quote_percent = (
            quote_balance / total_value * Decimal("100") if total_value > 0 else Decimal("100")
        )
        if quote_percent > 80:
            level, advice = RiskLevel.LOW, "Mostly in cash, consider diversifying"
        elif quote_percent > 50:
            level, advice = RiskLevel.MEDIUM, "Risk level acceptable"
        else:
            level, advice = RiskLevel.HIGH, "Most of the account is exposed to market moves"
        return cls(
            total_value=total_value,
            quote_percent=quote_percent,
            risk_level=level,
            recommendation=advice,
        )


class SignalSummary(BaseModel):
    """Current fused signal for one symbol."""

    symbol: str
    signal: Optional[SignalDirection] = None
    confidence: float = 0.0
    price: Optional[float] = None
    support: Optional[float] = None
    resistance: Optional[float] = None
    strategies: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BracketReport(BaseModel):
    """Stop-loss and take-profit pair placed for one entry."""

    symbol: str
    entry_price: Decimal
    amount: Decimal
    stop_loss_price: Decimal
    take_profit_price: Decimal
    stop_loss_percent: Decimal
    take_profit_percent: Decimal
    stop_loss_order_id: str
    take_profit_order_id: str


class RebalanceReport(BaseModel):
    """Outcome of one portfolio rebalance."""

    quote_percent: Decimal
    threshold_percent: Decimal
    rebalanced: bool = False
    trades: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)


class EngineStatus(BaseModel):
    """Snapshot of the engine's runtime state."""

    model_config = ConfigDict(use_enum_values=True)

    running: bool
    trading_enabled: bool
    strategy_set: str
    tracked_symbols: List[str]
    feed_status: Optional[str] = None
    tick_count: int = 0
    skipped_ticks: int = 0
    total_trades: int = 0
    active_orders: int = 0
    persistence_failures: int = 0
