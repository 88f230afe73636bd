"""
Trading Operation Models

This module contains Pydantic models for the simulated account:
- TradeRecord: Immutable record of an executed paper trade
- Order: Stop-loss / take-profit exit order with one-way state transitions
- Position: Holding of one asset with its average cost
- LedgerSnapshot: Persisted form of the whole ledger

Money, amounts and prices are Decimal throughout.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from ..exceptions import InvalidOrder
from .market_data import normalize_symbol, split_symbol


SNAPSHOT_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderSide(str, Enum):
    """Trade side enumeration."""
    BUY = "BUY"
    SELL = "SELL"


class OrderKind(str, Enum):
    """Exit order kinds."""
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"

    @property
    def id_prefix(self) -> str:
        return "sl" if self is OrderKind.STOP_LOSS else "tp"


class OrderStatus(str, Enum):
    """Exit order status. EXECUTED and CANCELLED are terminal."""
    ACTIVE = "ACTIVE"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.ACTIVE


class TradeSource(str, Enum):
    """What caused a trade."""
    MANUAL = "manual"
    STRATEGY = "strategy"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    REBALANCE = "rebalance"


class TradeRecord(BaseModel):
    """Executed paper trade. Never mutated once appended to the ledger."""

    trade_id: str = Field(default_factory=lambda: f"trade_{uuid.uuid4().hex[:12]}")
    symbol: str = Field(..., description="Symbol in BASE/QUOTE form")
    side: OrderSide
    amount: Decimal = Field(..., gt=Decimal("0"), description="Base asset quantity")
    price: Decimal = Field(..., gt=Decimal("0"), description="Execution price in quote currency")
    timestamp: datetime = Field(default_factory=_utcnow)
    source: TradeSource = Field(default=TradeSource.MANUAL)
    order_id: Optional[str] = Field(default=None, description="Exit order that caused the trade")

    model_config = ConfigDict(frozen=True)

    @field_validator('symbol')
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return normalize_symbol(v)

    @computed_field
    @property
    def total(self) -> Decimal:
        """Quote currency value of the trade."""
        return self.amount * self.price

    @property
    def base_currency(self) -> str:
        return split_symbol(self.symbol)[0]

    @property
    def quote_currency(self) -> str:
        return split_symbol(self.symbol)[1]


class Order(BaseModel):
    """
    Stop-loss or take-profit exit order.

    Transitions are one-way: ACTIVE -> EXECUTED or ACTIVE -> CANCELLED.
    Both exit kinds sell the base asset when triggered.
    """

    order_id: str = Field(default="")
    symbol: str = Field(..., description="Symbol in BASE/QUOTE form")
    kind: OrderKind
    trigger_price: Decimal = Field(..., gt=Decimal("0"))
    amount: Decimal = Field(..., gt=Decimal("0"))
    status: OrderStatus = Field(default=OrderStatus.ACTIVE)
    created_at: datetime = Field(default_factory=_utcnow)
    executed_at: Optional[datetime] = None
    executed_price: Optional[Decimal] = None
    trade_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    model_config = ConfigDict(validate_assignment=True)

    @field_validator('symbol')
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return normalize_symbol(v)

    def model_post_init(self, __context) -> None:
        if not self.order_id:
            self.order_id = f"{self.kind.id_prefix}_{uuid.uuid4().hex[:12]}"

    @property
    def is_active(self) -> bool:
        return self.status is OrderStatus.ACTIVE

    @property
    def base_currency(self) -> str:
        return split_symbol(self.symbol)[0]

    def is_triggered(self, price: Decimal) -> bool:
        """Stop-loss fires at or below its trigger, take-profit at or above."""
        if self.kind is OrderKind.STOP_LOSS:
            return price <= self.trigger_price
        return price >= self.trigger_price

    def mark_executed(self, price: Decimal, trade_id: str, at: Optional[datetime] = None) -> None:
        if not self.is_active:
            raise InvalidOrder(f"Order {self.order_id} is already {self.status.value}")
        self.status = OrderStatus.EXECUTED
        self.executed_at = at or _utcnow()
        self.executed_price = price
        self.trade_id = trade_id

    def mark_cancelled(self, reason: str, at: Optional[datetime] = None) -> None:
        if not self.is_active:
            raise InvalidOrder(f"Order {self.order_id} is already {self.status.value}")
        self.status = OrderStatus.CANCELLED
        self.cancelled_at = at or _utcnow()
        self.cancel_reason = reason


class Position(BaseModel):
    """Holding of one asset valued against its average cost."""

    symbol: str
    amount: Decimal = Field(..., ge=Decimal("0"))
    average_cost: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    current_price: Optional[Decimal] = None

    @computed_field
    @property
    def cost_basis(self) -> Decimal:
        return self.amount * self.average_cost

    @computed_field
    @property
    def market_value(self) -> Optional[Decimal]:
        if self.current_price is None:
            return None
        return self.amount * self.current_price

    @computed_field
    @property
    def unrealized_pnl(self) -> Optional[Decimal]:
        if self.current_price is None or self.average_cost == 0:
            return None
        return (self.current_price - self.average_cost) * self.amount

    @computed_field
    @property
    def unrealized_pnl_percent(self) -> Optional[Decimal]:
        if self.current_price is None or self.average_cost == 0:
            return None
        return (self.current_price - self.average_cost) / self.average_cost * Decimal("100")


class LedgerSnapshot(BaseModel):
    """Persisted form of the ledger."""

    schema_version: int = Field(default=SNAPSHOT_SCHEMA_VERSION)
    balances: Dict[str, Decimal] = Field(default_factory=dict)
    trades: List[TradeRecord] = Field(default_factory=list)
    orders: List[Order] = Field(default_factory=list)
    trading_enabled: bool = Field(default=False)
    last_update: datetime = Field(default_factory=_utcnow)

    @field_validator('balances')
    @classmethod
    def validate_balances(cls, v: Dict[str, Decimal]) -> Dict[str, Decimal]:
        for currency, amount in v.items():
            if amount < 0:
                raise ValueError(f"Negative balance for {currency}: {amount}")
        return v
