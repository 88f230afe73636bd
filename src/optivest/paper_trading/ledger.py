"""
Position Ledger

Virtual balances, the append-only trade history and the exit orders of
the simulated account. Every mutation happens while holding the ledger's
``asyncio.Lock``; callers that need several steps to be atomic (the order
manager re-validating holdings before a triggered sell, for example)
take the lock themselves and use the ``*_locked`` methods.

After each state change the ledger writes a snapshot through its
``SnapshotStore``. A failed write is logged and counted; the in-memory
ledger stays authoritative and the next write retries.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, computed_field

from ..exceptions import InsufficientFunds, InsufficientHoldings, InvalidOrder, PersistenceFailure
from ..logger import get_logger, get_trading_adapter
from ..models.market_data import normalize_symbol, split_symbol
from ..models.trading import (
    LedgerSnapshot,
    Order,
    OrderSide,
    OrderStatus,
    Position,
    TradeRecord,
    TradeSource,
)
from .persistence import SnapshotStore


logger = get_logger(__name__)

Number = Union[Decimal, float, int, str]


def to_decimal(value: Number, field: str = "value") -> Decimal:
    """Convert to Decimal through ``str`` so floats keep their printed value."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise InvalidOrder(f"Invalid {field}: {value!r}") from e
    if not result.is_finite():
        raise InvalidOrder(f"Invalid {field}: {value!r}")
    return result


class CostBasis(BaseModel):
    """Average-cost bookkeeping for one asset, rebuilt from the trade history."""

    amount: Decimal = Decimal("0")
    average_cost: Decimal = Decimal("0")


class LedgerPerformance(BaseModel):
    """Realised trading results."""

    total_trades: int = 0
    buy_trades: int = 0
    sell_trades: int = 0
    profitable_sells: int = 0
    realized_pnl: Decimal = Decimal("0")
    quote_balance: Decimal = Decimal("0")
    initial_balance: Decimal = Decimal("0")

    @computed_field
    @property
    def success_rate(self) -> float:
        """Percentage of sells closed above the running average cost."""
        if self.sell_trades == 0:
            return 0.0
        return round(self.profitable_sells / self.sell_trades * 100, 2)


class PositionLedger:
    """Single-writer store for balances, trades and exit orders."""

    def __init__(
        self,
        initial_balance: Number = Decimal("10000"),
        quote_currency: str = "USDT",
        store: Optional[SnapshotStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.initial_balance = to_decimal(initial_balance, "initial_balance")
        if self.initial_balance <= 0:
            raise ValueError("initial_balance must be positive")
        self.quote_currency = quote_currency.upper()
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = asyncio.Lock()
        self._balances: Dict[str, Decimal] = {self.quote_currency: self.initial_balance}
        self._trades: List[TradeRecord] = []
        self._orders: List[Order] = []
        self._trading_enabled = False
        self.persistence_failures = 0

    # Loading and persistence

    def load(self) -> bool:
        """
        Restore state from the snapshot store.

        Returns True when a snapshot was loaded. A missing file keeps the
        defaults; an unreadable one is moved aside and the defaults are used.
        """
        if self.store is None:
            return False
        try:
            snapshot = self.store.load()
        except PersistenceFailure as e:
            logger.error(f"Could not load ledger snapshot, starting from defaults: {e}")
            try:
                self.store.quarantine()
            except PersistenceFailure as move_error:
                logger.error(str(move_error))
            return False

        if snapshot is None:
            logger.info(f"No ledger snapshot at {self.store.path}, starting with {self.initial_balance} {self.quote_currency}")
            return False

        self._balances = dict(snapshot.balances)
        self._balances.setdefault(self.quote_currency, Decimal("0"))
        self._trades = list(snapshot.trades)
        self._orders = list(snapshot.orders)
        self._trading_enabled = snapshot.trading_enabled
        logger.info(
            f"Ledger loaded: {len(self._trades)} trades, "
            f"{len(self.active_orders())} active orders, trading {'on' if self._trading_enabled else 'off'}"
        )
        return True

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            balances=dict(self._balances),
            trades=list(self._trades),
            orders=[order.model_copy() for order in self._orders],
            trading_enabled=self._trading_enabled,
            last_update=self.clock(),
        )

    def persist_locked(self) -> bool:
        """Write a snapshot. Caller must hold the lock."""
        if self.store is None:
            return True
        try:
            self.store.save(self.snapshot())
            return True
        except PersistenceFailure as e:
            self.persistence_failures += 1
            logger.error(f"Ledger snapshot not written: {e}")
            return False

    async def flush(self) -> bool:
        async with self._lock:
            return self.persist_locked()

    # Reads

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    @property
    def trading_enabled(self) -> bool:
        return self._trading_enabled

    @property
    def orders(self) -> List[Order]:
        return list(self._orders)

    def get_balance(self) -> Dict[str, Decimal]:
        return dict(self._balances)

    def balance_of(self, currency: str) -> Decimal:
        return self._balances.get(currency.upper(), Decimal("0"))

    def holdings(self, symbol: str) -> Decimal:
        base, _ = split_symbol(normalize_symbol(symbol))
        return self.balance_of(base)

    def get_trade_history(self, limit: Optional[int] = None) -> List[TradeRecord]:
        """Trades newest first."""
        trades = list(reversed(self._trades))
        if limit is not None:
            if limit < 0:
                raise ValueError("limit must not be negative")
            trades = trades[:limit]
        return trades

    def last_trade_time(self, symbol: str) -> Optional[datetime]:
        base, _ = split_symbol(normalize_symbol(symbol))
        for trade in reversed(self._trades):
            if trade.base_currency == base:
                return trade.timestamp
        return None

    def get_order(self, order_id: str) -> Optional[Order]:
        return next((o for o in self._orders if o.order_id == order_id), None)

    def active_orders(self, symbol: Optional[str] = None) -> List[Order]:
        wanted = normalize_symbol(symbol) if symbol else None
        return [
            o for o in self._orders
            if o.status is OrderStatus.ACTIVE and (wanted is None or o.symbol == wanted)
        ]

    def cost_basis(self) -> Dict[str, CostBasis]:
        return self._replay()[0]

    def get_open_positions(self) -> List[Position]:
        """Non-zero asset balances with their average cost."""
        basis = self.cost_basis()
        positions = []
        for currency, amount in sorted(self._balances.items()):
            if currency == self.quote_currency or amount <= 0:
                continue
            average_cost = basis[currency].average_cost if currency in basis else Decimal("0")
            positions.append(Position(
                symbol=f"{currency}/{self.quote_currency}",
                amount=amount,
                average_cost=average_cost,
            ))
        return positions

    def get_performance(self) -> LedgerPerformance:
        _, realized, profitable_sells = self._replay()
        buys = sum(1 for t in self._trades if t.side is OrderSide.BUY)
        return LedgerPerformance(
            total_trades=len(self._trades),
            buy_trades=buys,
            sell_trades=len(self._trades) - buys,
            profitable_sells=profitable_sells,
            realized_pnl=realized,
            quote_balance=self.balance_of(self.quote_currency),
            initial_balance=self.initial_balance,
        )

    def _replay(self):
        """Walk the trade history with the average-cost method."""
        basis: Dict[str, CostBasis] = {}
        realized = Decimal("0")
        profitable_sells = 0
        for trade in self._trades:
            entry = basis.setdefault(trade.base_currency, CostBasis())
            if trade.side is OrderSide.BUY:
                new_amount = entry.amount + trade.amount
                entry.average_cost = (
                    entry.amount * entry.average_cost + trade.amount * trade.price
                ) / new_amount
                entry.amount = new_amount
                continue

            if entry.amount > 0:
                matched = min(trade.amount, entry.amount)
                realized += (trade.price - entry.average_cost) * matched
                if trade.price > entry.average_cost:
                    profitable_sells += 1
            entry.amount -= trade.amount
            if entry.amount <= 0:
                entry.amount = Decimal("0")
                entry.average_cost = Decimal("0")
        return basis, realized, profitable_sells

    # Writes

    def apply_trade_locked(
        self,
        symbol: str,
        side: Union[OrderSide, str],
        amount: Number,
        price: Number,
        source: TradeSource = TradeSource.MANUAL,
        order_id: Optional[str] = None,
    ) -> TradeRecord:
        """Validate and book a trade. Caller must hold the lock."""
        symbol = normalize_symbol(symbol)
        side = OrderSide(side.upper() if isinstance(side, str) else side)
        amount = to_decimal(amount, "amount")
        price = to_decimal(price, "price")
        if amount <= 0:
            raise InvalidOrder(f"Trade amount must be positive, got {amount}")
        if price <= 0:
            raise InvalidOrder(f"Trade price must be positive, got {price}")

        base, quote = split_symbol(symbol)
        if quote != self.quote_currency:
            raise InvalidOrder(f"{symbol} is not quoted in {self.quote_currency}")

        total = amount * price
        if side is OrderSide.BUY:
            available = self.balance_of(quote)
            if available < total:
                raise InsufficientFunds(quote, total, available)
            self._balances[quote] = available - total
            self._balances[base] = self.balance_of(base) + amount
        else:
            available = self.balance_of(base)
            if available < amount:
                raise InsufficientHoldings(base, amount, available)
            self._balances[base] = available - amount
            self._balances[quote] = self.balance_of(quote) + total

        trade = TradeRecord(
            symbol=symbol,
            side=side,
            amount=amount,
            price=price,
            timestamp=self.clock(),
            source=source,
            order_id=order_id,
        )
        self._trades.append(trade)

        get_trading_adapter(logger, symbol=symbol, trade_id=trade.trade_id).info(
            f"{side.value} {amount} {base} @ {price} ({total} {quote}, {source.value})"
        )
        return trade

    async def execute_trade(
        self,
        symbol: str,
        side: Union[OrderSide, str],
        amount: Number,
        price: Number,
        source: TradeSource = TradeSource.MANUAL,
        order_id: Optional[str] = None,
    ) -> TradeRecord:
        """
        Execute a paper trade.

        Raises:
            InvalidOrder: non-positive amount or price, or a foreign quote currency
            InsufficientFunds: BUY costs more than the quote balance
            InsufficientHoldings: SELL exceeds the base balance
        """
        async with self._lock:
            trade = self.apply_trade_locked(symbol, side, amount, price, source, order_id)
            self.persist_locked()
        return trade

    def add_order_locked(self, order: Order) -> Order:
        self._orders.append(order)
        return order

    async def add_balance(self, currency: str, amount: Number) -> Decimal:
        """Deposit virtual funds; returns the new balance."""
        amount = to_decimal(amount, "amount")
        if amount <= 0:
            raise InvalidOrder(f"Deposit must be positive, got {amount}")
        currency = currency.upper()
        async with self._lock:
            self._balances[currency] = self.balance_of(currency) + amount
            self.persist_locked()
            balance = self._balances[currency]
        logger.info(f"Deposited {amount} {currency}, balance {balance}")
        return balance

    async def set_trading_enabled(self, enabled: bool) -> None:
        async with self._lock:
            self._trading_enabled = enabled
            self.persist_locked()

    async def reset_balance(self) -> None:
        """Back to the starting balance with no trades and no orders."""
        async with self._lock:
            self._balances = {self.quote_currency: self.initial_balance}
            self._trades = []
            self._orders = []
            self.persist_locked()
        logger.info(f"Ledger reset to {self.initial_balance} {self.quote_currency}")
