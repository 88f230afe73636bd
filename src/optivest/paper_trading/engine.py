"""
Paper Trading Engine

Facade over the components of the simulated account:

- ``PositionLedger``: balances, trade history and exit orders
- ``OrderManager``: stop-loss / take-profit lifecycle
- ``PriceFeed``: live ticker cache (optional)
- ``CandleSource``: historical candles and a fallback ticker price
- ``StrategyScheduler``: periodic strategy evaluation and trading
- ``SymbolSelector``: the persisted set of tracked symbols

Every component can be injected; anything not injected is built from the
``Config``.
"""

import asyncio
import signal
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from ..agents.price_feed import PriceFeed
from ..agents.scheduler import AMOUNT_QUANTUM, StrategyScheduler
from ..config import Config
from ..exceptions import DataUnavailable, InvalidOrder, OptivestError
from ..logger import get_logger, get_trading_adapter
from ..market.candle_source import CandleSource, CcxtCandleSource
from ..market.symbols import SymbolSelector
from ..models.market_data import normalize_symbol, split_symbol
from ..models.trading import Order, OrderKind, OrderSide, Position, TradeRecord, TradeSource
from ..strategies.fusion import StrategyFusion
from .ledger import Number, PositionLedger, to_decimal
from .orders import OrderCheckResult, OrderManager
from .persistence import SnapshotStore, StateLock
from .reports import (
    BalanceReport,
    BracketReport,
    EngineStatus,
    Holding,
    PerformanceReport,
    RebalanceReport,
    RiskAnalysis,
    SignalSummary,
)


REBALANCE_QUOTE_SHARE = Decimal("20")
REBALANCE_MAX_POSITIONS = 3
REBALANCE_MIN_VALUE = Decimal("200")
REBALANCE_SELL_PERCENT = Decimal("30")


class PaperTradingEngine:
    """Simulated trading account with automated strategy execution."""

    def __init__(
        self,
        config: Optional[Config] = None,
        candle_source: Optional[CandleSource] = None,
        feed: Optional[PriceFeed] = None,
        ledger: Optional[PositionLedger] = None,
        symbol_selector: Optional[SymbolSelector] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or Config()
        self.logger = get_logger(__name__)
        self.quote_currency = self.config.risk.quote_currency.upper()

        self.ledger = ledger or PositionLedger(
            initial_balance=self.config.risk.initial_balance,
            quote_currency=self.quote_currency,
            store=SnapshotStore(self.config.storage.state_file),
            clock=clock,
        )
        self.order_manager = OrderManager(
            self.ledger,
            stop_loss_percent=self.config.risk.stop_loss_percent,
            take_profit_percent=self.config.risk.take_profit_percent,
        )
        self.fusion = StrategyFusion(self.config.trading.strategy_set)
        self.symbol_selector = symbol_selector or SymbolSelector(
            self.config.storage.symbols_file,
            count=self.config.trading.tracked_symbols_count,
        )
        self.candle_source = candle_source or CcxtCandleSource(
            self.config.exchange.exchange_id,
            timeout_ms=self.config.exchange.timeout_ms,
        )

        self.state_lock = StateLock(self.config.storage.state_file)

        self.tracked_symbols: List[str] = []
        if feed is None and self.config.feed.enabled:
            feed = PriceFeed([], self.config.feed)
        self.feed = feed
        self.tick_queue = self.feed.subscribe() if self.feed is not None else None

        self.scheduler = StrategyScheduler(
            self.ledger,
            self.order_manager,
            self.candle_source,
            self.fusion,
            symbols=lambda: self.tracked_symbols,
            price_lookup=self.get_current_price,
            trading_config=self.config.trading,
            risk_config=self.config.risk,
            ticks=self.tick_queue,
        )

        self.shutdown_event = asyncio.Event()
        self.is_running = False
        self.start_time: Optional[datetime] = None
        self.signal_handlers_registered = False
        self._initialized = False

    # Lifecycle

    async def initialize(self) -> None:
        """Load the ledger, pick the tracked symbols and drop stale orders."""
        if self._initialized:
            return

        self.ledger.load()
        if self.config.trading.tracked_symbols:
            self.tracked_symbols = [normalize_symbol(s) for s in self.config.trading.tracked_symbols]
        else:
            self.tracked_symbols = self.symbol_selector.load_or_create()
        if self.feed is not None:
            await self.feed.set_symbols(self.tracked_symbols)

        removed = await self.order_manager.cleanup_invalid_orders()
        if removed:
            self.logger.warning(f"Removed {len(removed)} invalid orders on startup")

        if self.config.trading.auto_start and not self.ledger.trading_enabled:
            await self.ledger.set_trading_enabled(True)

        self._initialized = True
        self.logger.info(
            f"Engine initialized: {len(self.tracked_symbols)} symbols, "
            f"strategy set {self.fusion.strategy_set.name}, "
            f"trading {'enabled' if self.ledger.trading_enabled else 'disabled'}"
        )

    def acquire_state_lock(self) -> None:
        """
        Claim the state file for this process.

        Raises:
            StateLocked: another live process is writing it
        """
        self.state_lock.acquire()

    def release_state_lock(self) -> None:
        self.state_lock.release()

    async def start(self, install_signal_handlers: bool = True) -> None:
        """Start the price feed and the scheduler."""
        if self.is_running:
            self.logger.warning("Paper Trading Engine is already running")
            return

        self.acquire_state_lock()
        try:
            await self.initialize()
        except Exception:
            self.release_state_lock()
            raise
        self.shutdown_event = asyncio.Event()
        if install_signal_handlers:
            self._setup_signal_handlers()

        if self.feed is not None and not await self.feed.start():
            self.logger.warning("Price feed did not start, prices come from the candle source")
        await self.scheduler.start()

        self.is_running = True
        self.start_time = datetime.now(timezone.utc)
        self.logger.info("Paper Trading Engine started")

    async def stop(self) -> None:
        """Stop the agents, write a final snapshot and close connections."""
        if not self.is_running:
            self.shutdown_event.set()
            return

        self.logger.info("Stopping Paper Trading Engine...")
        self.shutdown_event.set()
        await self.scheduler.stop()
        if self.feed is not None:
            await self.feed.stop()

        if not await self.ledger.flush():
            self.logger.error("Final snapshot could not be written")
        try:
            await self.candle_source.close()
        except OptivestError as e:
            self.logger.error(f"Error closing candle source: {e}")
        self.release_state_lock()

        self.is_running = False
        self.logger.info("Paper Trading Engine stopped")

    async def run_forever(self) -> None:
        """Start and block until a shutdown is requested."""
        await self.start()
        try:
            await self.shutdown_event.wait()
        finally:
            await self.stop()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown"""
        if self.signal_handlers_registered:
            return

        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
        self.signal_handlers_registered = True

    # Prices

    async def get_current_price(self, symbol: str) -> Decimal:
        """
        Current price of a symbol.

        A fresh feed price wins; otherwise the candle source's ticker is used.

        Raises:
            DataUnavailable: neither source has a price
        """
        symbol = normalize_symbol(symbol)
        if self.feed is not None:
            tick = self.feed.get_price(symbol)
            if tick is not None:
                return tick.price
        price = await self.candle_source.get_ticker_price(symbol)
        if price is None or price <= 0:
            raise DataUnavailable(f"No price for {symbol}", symbol=symbol)
        return price

    async def _price_or_none(self, symbol: str) -> Optional[Decimal]:
        try:
            return await self.get_current_price(symbol)
        except DataUnavailable as e:
            self.logger.debug(f"Valuing {symbol} without a price: {e}")
            return None

    # Balances and positions

    def get_balance(self) -> Dict[str, Decimal]:
        return self.ledger.get_balance()

    def get_trade_history(self, limit: Optional[int] = None) -> List[TradeRecord]:
        return self.ledger.get_trade_history(limit)

    async def get_open_positions(self) -> List[Position]:
        """Open positions valued at current prices where available."""
        positions = []
        for position in self.ledger.get_open_positions():
            price = await self._price_or_none(position.symbol)
            positions.append(position.model_copy(update={"current_price": price}))
        return positions

    async def get_holdings(self) -> List[Holding]:
        """Open positions in report form. Unpriced ones are valued at their average cost."""
        holdings = []
        for position in await self.get_open_positions():
            base, _ = split_symbol(position.symbol)
            priced = position.market_value is not None
            holdings.append(Holding(
                currency=base,
                symbol=position.symbol,
                amount=position.amount,
                price=position.current_price,
                value=position.market_value if priced else position.amount * position.average_cost,
                priced=priced,
                average_cost=position.average_cost,
                unrealized_pnl=position.unrealized_pnl,
            ))
        return holdings

    async def get_balance_report(self) -> BalanceReport:
        """Balances and holdings; ``partial`` is set when a holding had no current price."""
        return BalanceReport(
            quote_currency=self.quote_currency,
            balances=self.ledger.get_balance(),
            available_balance=self.ledger.balance_of(self.quote_currency),
            holdings=await self.get_holdings(),
            initial_balance=self.ledger.initial_balance,
        )

    async def get_performance_report(self) -> PerformanceReport:
        balance = await self.get_balance_report()
        performance = self.ledger.get_performance()
        return PerformanceReport(
            total_value=balance.total_value,
            initial_balance=self.ledger.initial_balance,
            total_trades=performance.total_trades,
            buy_trades=performance.buy_trades,
            sell_trades=performance.sell_trades,
            success_rate=performance.success_rate,
            realized_pnl=performance.realized_pnl,
        )

    async def get_risk_analysis(self) -> RiskAnalysis:
        balance = await self.get_balance_report()
        return RiskAnalysis.from_values(balance.available_balance, balance.total_value)

    async def add_balance(self, amount: Number, currency: Optional[str] = None) -> Decimal:
        return await self.ledger.add_balance(currency or self.quote_currency, amount)

    async def reset_balance(self) -> None:
        await self.ledger.reset_balance()

    # Trading control

    async def start_trading(self) -> None:
        await self.ledger.set_trading_enabled(True)
        self.logger.info("Automated trading started")

    async def stop_trading(self) -> None:
        await self.ledger.set_trading_enabled(False)
        self.logger.info("Automated trading stopped")

    def is_trading_running(self) -> bool:
        return self.ledger.trading_enabled

    async def execute_manual_trade(
        self,
        symbol: str,
        side: Union[OrderSide, str],
        amount: Number,
        price: Optional[Number] = None,
    ) -> TradeRecord:
        """
        Execute a user-initiated trade, at the current price unless one is given.

        Raises:
            InvalidOrder: bad amount or price, or a BUY above the manual trade cap
            InsufficientFunds / InsufficientHoldings: the account cannot cover it
            DataUnavailable: no price given and none available
        """
        symbol = normalize_symbol(symbol)
        try:
            side = OrderSide(side.upper() if isinstance(side, str) else side)
        except ValueError:
            raise InvalidOrder(f"Trade side must be BUY or SELL, got {side!r}") from None
        amount = to_decimal(amount, "amount")
        if price is None:
            price = await self.get_current_price(symbol)
        price = to_decimal(price, "price")

        if side is OrderSide.BUY and amount * price > self.config.risk.max_manual_trade:
            raise InvalidOrder(
                f"Trade value {amount * price} exceeds the manual limit of "
                f"{self.config.risk.max_manual_trade} {self.quote_currency}"
            )

        trade = await self.ledger.execute_trade(symbol, side, amount, price, source=TradeSource.MANUAL)
        if side is OrderSide.SELL:
            await self.order_manager.cleanup_invalid_orders()
        return trade

    async def force_sell_position(self, symbol: str, percentage: Number = 50) -> Optional[TradeRecord]:
        """Sell ``percentage`` percent of a holding at the current price."""
        percentage = to_decimal(percentage, "percentage")
        if not Decimal("0") < percentage <= Decimal("100"):
            raise InvalidOrder(f"Percentage must be in (0, 100], got {percentage}")

        symbol = normalize_symbol(symbol)
        held = self.ledger.holdings(symbol)
        amount = (held * percentage / Decimal("100")).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
        if amount <= 0:
            self.logger.info(f"No {symbol} holding to sell")
            return None

        price = await self.get_current_price(symbol)
        trade = await self.ledger.execute_trade(
            symbol, OrderSide.SELL, amount, price, source=TradeSource.MANUAL
        )
        await self.order_manager.cleanup_invalid_orders()
        get_trading_adapter(self.logger, symbol=symbol, trade_id=trade.trade_id).info(
            f"Force sold {percentage}% of holding"
        )
        return trade

    async def rebalance_portfolio(self) -> RebalanceReport:
        """
        Trim the largest holdings when cash runs low.

        With less than 20% of the account in the quote currency, 30% of
        each of the three largest holdings worth more than 200 is sold at
        the current price. A failed sale is reported and the others still run.
        """
        balance = await self.get_balance_report()
        risk = RiskAnalysis.from_values(balance.available_balance, balance.total_value)
        report = RebalanceReport(quote_percent=risk.quote_percent, threshold_percent=REBALANCE_QUOTE_SHARE)
        if risk.quote_percent >= REBALANCE_QUOTE_SHARE:
            self.logger.info(f"No rebalance needed, {risk.quote_percent:.1f}% in {self.quote_currency}")
            return report

        largest = sorted(balance.holdings, key=lambda h: h.value, reverse=True)[:REBALANCE_MAX_POSITIONS]
        for holding in largest:
            if not holding.priced or holding.value <= REBALANCE_MIN_VALUE:
                continue
            amount = (holding.amount * REBALANCE_SELL_PERCENT / Decimal("100")).quantize(
                AMOUNT_QUANTUM, rounding=ROUND_DOWN
            )
            if amount <= 0:
                continue
            try:
                trade = await self.ledger.execute_trade(
                    holding.symbol, OrderSide.SELL, amount, holding.price, source=TradeSource.REBALANCE
                )
            except OptivestError as e:
                report.errors[holding.symbol] = str(e)
                self.logger.error(f"Rebalance sale of {holding.symbol} failed: {e}")
                continue
            report.trades.append(trade.trade_id)
            get_trading_adapter(self.logger, symbol=holding.symbol, trade_id=trade.trade_id).info(
                f"Rebalanced: sold {amount} @ {holding.price}"
            )

        if report.trades:
            report.rebalanced = True
            await self.order_manager.cleanup_invalid_orders()
        return report

    # Orders

    async def create_stop_loss_order(self, symbol: str, trigger_price: Number, amount: Number) -> Order:
        return await self.order_manager.create_stop_loss_order(symbol, trigger_price, amount)

    async def create_take_profit_order(self, symbol: str, trigger_price: Number, amount: Number) -> Order:
        return await self.order_manager.create_take_profit_order(symbol, trigger_price, amount)

    async def create_bracket(
        self,
        symbol: str,
        entry_price: Number,
        amount: Number,
        stop_loss_percent: Optional[Number] = None,
        take_profit_percent: Optional[Number] = None,
    ) -> BracketReport:
        """
        Protect a holding with a stop-loss and a take-profit around ``entry_price``.

        Percentages default to the configured risk settings.

        Raises:
            InvalidOrder: bad price or percentage, or the holding does not cover ``amount``
        """
        stop_percent = to_decimal(
            stop_loss_percent if stop_loss_percent is not None else self.config.risk.stop_loss_percent,
            "stop_loss_percent",
        )
        target_percent = to_decimal(
            take_profit_percent if take_profit_percent is not None else self.config.risk.take_profit_percent,
            "take_profit_percent",
        )
        stop_order, target_order = await self.order_manager.create_bracket(
            symbol,
            entry_price,
            amount,
            stop_loss_percent=stop_percent,
            take_profit_percent=target_percent,
        )
        return BracketReport(
            symbol=stop_order.symbol,
            entry_price=to_decimal(entry_price, "entry_price"),
            amount=stop_order.amount,
            stop_loss_price=stop_order.trigger_price,
            take_profit_price=target_order.trigger_price,
            stop_loss_percent=stop_percent,
            take_profit_percent=target_percent,
            stop_loss_order_id=stop_order.order_id,
            take_profit_order_id=target_order.order_id,
        )

    async def cancel_order(self, order_id: str) -> Optional[Order]:
        return await self.order_manager.cancel_order(order_id)

    def get_active_orders(self, symbol: Optional[str] = None, kind: Optional[OrderKind] = None) -> List[Order]:
        return self.order_manager.get_active_orders(symbol, kind)

    async def check_orders(self) -> OrderCheckResult:
        return await self.order_manager.check_orders(self.get_current_price)

    # Symbols and signals

    async def regenerate_tracked_symbols(self) -> List[str]:
        self.tracked_symbols = self.symbol_selector.regenerate()
        if self.feed is not None:
            await self.feed.set_symbols(self.tracked_symbols)
        return list(self.tracked_symbols)

    async def get_current_signals(self, limit: int = 5) -> List[SignalSummary]:
        """Fused signal for the first ``limit`` tracked symbols."""
        summaries = []
        for symbol in self.tracked_symbols[:limit]:
            try:
                candles = await self.candle_source.get_candles(
                    symbol, self.config.trading.timeframe, self.config.trading.candle_limit
                )
                result = self.fusion.evaluate(candles, symbol=symbol)
            except DataUnavailable as e:
                summaries.append(SignalSummary(symbol=symbol, error=str(e)))
                continue

            decision = result.decision
            summaries.append(SignalSummary(
                symbol=symbol,
                signal=decision.signal,
                confidence=decision.confidence,
                price=result.snapshot.price,
                support=decision.support,
                resistance=decision.resistance,
                strategies={s.strategy: s.signal.value for s in result.signals},
            ))
        return summaries

    # Status

    def get_status(self) -> EngineStatus:
        return EngineStatus(
            running=self.is_running,
            trading_enabled=self.ledger.trading_enabled,
            strategy_set=self.fusion.strategy_set.name,
            tracked_symbols=list(self.tracked_symbols),
            feed_status=self.feed.status.value if self.feed is not None else None,
            tick_count=self.scheduler.tick_count,
            skipped_ticks=self.scheduler.skipped_ticks,
            total_trades=len(self.ledger.get_trade_history()),
            active_orders=len(self.ledger.active_orders()),
            persistence_failures=self.ledger.persistence_failures,
        )

    def get_health(self) -> Dict[str, Any]:
        health = {"scheduler": self.scheduler.get_health().model_dump(mode="json")}
        if self.feed is not None:
            health["price_feed"] = self.feed.get_health().model_dump(mode="json")
        return health
