"""
Order Manager

Stop-loss and take-profit exit orders for the paper account.

Orders move one way only: ACTIVE -> EXECUTED when the trigger is hit and
the holding still covers the amount, ACTIVE -> CANCELLED on user request,
on cleanup, or when the holding no longer covers the amount at trigger
time. Holdings are checked when an order is created and checked again,
under the ledger lock, right before a triggered order sells.
"""

import asyncio
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..exceptions import DataUnavailable, InvalidOrder
from ..logger import get_logger, get_trading_adapter
from ..models.market_data import normalize_symbol
from ..models.trading import Order, OrderKind, TradeSource
from .ledger import Number, PositionLedger, to_decimal


logger = get_logger(__name__)

PriceLookup = Callable[[str], Awaitable[Optional[Decimal]]]

PRICE_QUANTUM = Decimal("0.00000001")


class OrderCheckResult(BaseModel):
    """Outcome of one pass over the active orders."""

    checked: int = 0
    executed: List[str] = Field(default_factory=list)
    cancelled: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list, description="Orders whose price was unavailable")


class OrderManager:
    """Creates, triggers, cancels and cleans up exit orders."""

    def __init__(
        self,
        ledger: PositionLedger,
        stop_loss_percent: Number = Decimal("3"),
        take_profit_percent: Number = Decimal("6"),
    ):
        self.ledger = ledger
        self.stop_loss_percent = to_decimal(stop_loss_percent, "stop_loss_percent")
        self.take_profit_percent = to_decimal(take_profit_percent, "take_profit_percent")

    # Creation

    def _build_order_locked(self, symbol: str, kind: OrderKind, trigger_price: Number, amount: Number) -> Order:
        """Validate against current holdings. Caller must hold the ledger lock."""
        symbol = normalize_symbol(symbol)
        trigger = to_decimal(trigger_price, "trigger_price")
        quantity = to_decimal(amount, "amount")
        if trigger <= 0:
            raise InvalidOrder(f"Trigger price must be positive, got {trigger}")
        if quantity <= 0:
            raise InvalidOrder(f"Order amount must be positive, got {quantity}")

        held = self.ledger.holdings(symbol)
        if quantity > held:
            raise InvalidOrder(
                f"{kind.value} amount {quantity} exceeds {symbol} holdings {held}"
            )
        return Order(
            symbol=symbol,
            kind=kind,
            trigger_price=trigger,
            amount=quantity,
            created_at=self.ledger.clock(),
        )

    async def _create(self, symbol: str, kind: OrderKind, trigger_price: Number, amount: Number) -> Order:
        async with self.ledger.lock:
            order = self.ledger.add_order_locked(
                self._build_order_locked(symbol, kind, trigger_price, amount)
            )
            self.ledger.persist_locked()
        get_trading_adapter(logger, symbol=order.symbol).info(
            f"{kind.value} order {order.order_id} created: {order.amount} @ {order.trigger_price}"
        )
        return order

    async def create_stop_loss_order(self, symbol: str, trigger_price: Number, amount: Number) -> Order:
        """Sell ``amount`` once the price falls to ``trigger_price`` or below."""
        return await self._create(symbol, OrderKind.STOP_LOSS, trigger_price, amount)

    async def create_take_profit_order(self, symbol: str, trigger_price: Number, amount: Number) -> Order:
        """Sell ``amount`` once the price rises to ``trigger_price`` or above."""
        return await self._create(symbol, OrderKind.TAKE_PROFIT, trigger_price, amount)

    def _percent(self, value: Optional[Number], default: Decimal, name: str, upper: Optional[Decimal]) -> Decimal:
        if value is None:
            return default
        percent = to_decimal(value, name)
        if percent <= 0 or (upper is not None and percent >= upper):
            bound = f"(0, {upper})" if upper is not None else "above 0"
            raise InvalidOrder(f"{name} must be in {bound}, got {percent}")
        return percent

    def bracket_prices(
        self,
        entry_price: Number,
        support: Optional[Number] = None,
        resistance: Optional[Number] = None,
        stop_loss_percent: Optional[Number] = None,
        take_profit_percent: Optional[Number] = None,
    ) -> Tuple[Decimal, Decimal]:
        """
        Stop-loss and take-profit triggers for an entry.

        Support below the entry becomes the stop, resistance above it the
        target; otherwise the percentages apply, the configured ones unless
        given here.
        """
        entry = to_decimal(entry_price, "entry_price")
        if entry <= 0:
            raise InvalidOrder(f"Entry price must be positive, got {entry}")
        stop_percent = self._percent(stop_loss_percent, self.stop_loss_percent, "stop_loss_percent", Decimal("100"))
        target_percent = self._percent(take_profit_percent, self.take_profit_percent, "take_profit_percent", None)

        stop = None
        if support is not None:
            level = to_decimal(support, "support")
            if Decimal("0") < level < entry:
                stop = level
        if stop is None:
            stop = entry * (Decimal("1") - stop_percent / Decimal("100"))

        target = None
        if resistance is not None:
            level = to_decimal(resistance, "resistance")
            if level > entry:
                target = level
        if target is None:
            target = entry * (Decimal("1") + target_percent / Decimal("100"))

        return stop.quantize(PRICE_QUANTUM), target.quantize(PRICE_QUANTUM)

    async def create_bracket(
        self,
        symbol: str,
        entry_price: Number,
        amount: Number,
        support: Optional[Number] = None,
        resistance: Optional[Number] = None,
        stop_loss_percent: Optional[Number] = None,
        take_profit_percent: Optional[Number] = None,
    ) -> Tuple[Order, Order]:
        """Create a stop-loss and a take-profit for the same amount, atomically."""
        stop, target = self.bracket_prices(
            entry_price, support, resistance, stop_loss_percent, take_profit_percent
        )
        async with self.ledger.lock:
            stop_order = self._build_order_locked(symbol, OrderKind.STOP_LOSS, stop, amount)
            target_order = self._build_order_locked(symbol, OrderKind.TAKE_PROFIT, target, amount)
            self.ledger.add_order_locked(stop_order)
            self.ledger.add_order_locked(target_order)
            self.ledger.persist_locked()
        get_trading_adapter(logger, symbol=stop_order.symbol).info(
            f"Bracket for {stop_order.amount}: stop {stop} / target {target}"
        )
        return stop_order, target_order

    # Queries

    def get_active_orders(self, symbol: Optional[str] = None, kind: Optional[OrderKind] = None) -> List[Order]:
        orders = self.ledger.active_orders(symbol)
        if kind is not None:
            orders = [o for o in orders if o.kind is kind]
        return orders

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.ledger.get_order(order_id)

    # Transitions

    async def cancel_order(self, order_id: str, reason: str = "Cancelled by user") -> Optional[Order]:
        """
        Cancel an active order.

        Returns the cancelled order, or None when no active order has this
        id. Cancelling twice is harmless.
        """
        async with self.ledger.lock:
            order = self.ledger.get_order(order_id)
            if order is None or not order.is_active:
                return None
            order.mark_cancelled(reason, self.ledger.clock())
            self.ledger.persist_locked()
        logger.info(f"Order {order_id} cancelled: {reason}")
        return order

    async def cleanup_invalid_orders(self) -> List[Order]:
        """Cancel every active order whose amount exceeds current holdings."""
        cancelled = []
        async with self.ledger.lock:
            for order in self.ledger.active_orders():
                held = self.ledger.holdings(order.symbol)
                if order.amount > held:
                    order.mark_cancelled(
                        f"Amount {order.amount} exceeds holdings {held}", self.ledger.clock()
                    )
                    cancelled.append(order)
            if cancelled:
                self.ledger.persist_locked()
        for order in cancelled:
            logger.warning(f"Invalid {order.kind.value} order {order.order_id} for {order.symbol} removed: {order.cancel_reason}")
        return cancelled

    async def check_orders(
        self, price_lookup: PriceLookup, symbols: Optional[Iterable[str]] = None
    ) -> OrderCheckResult:
        """
        Evaluate active orders against current prices.

        Each symbol's price is looked up once per pass. A failed lookup
        skips that symbol's orders until the next pass. With ``symbols``
        only those symbols' orders are evaluated.
        """
        result = OrderCheckResult()
        active = self.ledger.active_orders()
        if symbols is not None:
            wanted = {normalize_symbol(s) for s in symbols}
            active = [o for o in active if o.symbol in wanted]
        if not active:
            return result

        prices: Dict[str, Optional[Decimal]] = {}
        for symbol in dict.fromkeys(o.symbol for o in active):
            try:
                price = await price_lookup(symbol)
                prices[symbol] = to_decimal(price, "price") if price is not None else None
            except (DataUnavailable, InvalidOrder, asyncio.TimeoutError, OSError) as e:
                logger.warning(f"No price for {symbol}, orders not checked this pass: {e}")
                prices[symbol] = None

        for order in active:
            result.checked += 1
            price = prices.get(order.symbol)
            if price is None or price <= 0:
                result.skipped.append(order.order_id)
                continue
            if not order.is_triggered(price):
                continue
            await self._execute_triggered(order, price, result)

        return result

    async def _execute_triggered(self, order: Order, price: Decimal, result: OrderCheckResult) -> None:
        source = TradeSource.STOP_LOSS if order.kind is OrderKind.STOP_LOSS else TradeSource.TAKE_PROFIT
        adapter = get_trading_adapter(logger, symbol=order.symbol)

        async with self.ledger.lock:
            # Cancelled or executed since the pass started
            if not order.is_active:
                return
            held = self.ledger.holdings(order.symbol)
            if held < order.amount:
                order.mark_cancelled(
                    f"Holdings {held} below order amount {order.amount} at trigger",
                    self.ledger.clock(),
                )
                self.ledger.persist_locked()
                result.cancelled.append(order.order_id)
                adapter.warning(f"{order.kind.value} {order.order_id} cancelled: {order.cancel_reason}")
                return

            trade = self.ledger.apply_trade_locked(
                order.symbol, "SELL", order.amount, price, source=source, order_id=order.order_id
            )
            order.mark_executed(price, trade.trade_id, self.ledger.clock())
            self.ledger.persist_locked()

        result.executed.append(order.order_id)
        adapter.info(
            f"{order.kind.value} {order.order_id} executed at {price} (trigger {order.trigger_price})"
        )
