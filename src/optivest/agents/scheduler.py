"""
Strategy Scheduler Agent

Drives automated trading on a fixed-rate timer. Every tick:

1. Active stop-loss / take-profit orders are checked against current
   prices, whether or not automated trading is enabled.
2. With trading enabled, each tracked symbol is analysed independently:
   candles are fetched, the strategy set votes, and an actionable
   decision above the confidence threshold becomes a paper trade unless
   the symbol traded within the cooldown window.

With a tick queue from the price feed, orders for a symbol are also
checked the moment a new price for it arrives.

Ticks never overlap. A tick that comes due while the previous one is
still running is skipped and counted, never queued.
"""

import asyncio
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..config import RiskConfig, TradingConfig
from ..exceptions import DataUnavailable, InvalidOrder, OptivestError
from ..logger import get_trading_adapter
from ..market.candle_source import CandleSource
from ..models.market_data import Candle, PriceTick, split_symbol
from ..models.signals import FusedDecision, SignalDirection
from ..models.trading import OrderSide, TradeSource
from ..paper_trading.ledger import PositionLedger
from ..paper_trading.orders import OrderCheckResult, OrderManager, PriceLookup
from ..strategies.fusion import FusionResult, StrategyFusion
from .base import AgentType, BaseAgent


AMOUNT_QUANTUM = Decimal("0.00000001")


class TickReport(BaseModel):
    """What happened during one scheduler tick."""

    tick_number: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    skipped: bool = False
    trading_enabled: bool = False
    orders: Optional[OrderCheckResult] = None
    decisions: Dict[str, str] = Field(default_factory=dict)
    trades: List[str] = Field(default_factory=list)
    cooldown: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)


class StrategyScheduler(BaseAgent):
    """Periodic strategy evaluation and trade execution."""

    def __init__(
        self,
        ledger: PositionLedger,
        order_manager: OrderManager,
        candle_source: CandleSource,
        fusion: StrategyFusion,
        symbols: Callable[[], Sequence[str]],
        price_lookup: PriceLookup,
        trading_config: Optional[TradingConfig] = None,
        risk_config: Optional[RiskConfig] = None,
        ticks: Optional["asyncio.Queue[PriceTick]"] = None,
    ):
        super().__init__("strategy_scheduler", AgentType.SCHEDULER)
        self.ledger = ledger
        self.order_manager = order_manager
        self.candle_source = candle_source
        self.fusion = fusion
        self.symbols = symbols
        self.price_lookup = price_lookup
        self.trading_config = trading_config or TradingConfig()
        self.risk_config = risk_config or RiskConfig()
        self.ticks = ticks

        self.tick_count = 0
        self.skipped_ticks = 0
        self.tick_checks = 0
        self.last_report: Optional[TickReport] = None
        self.latest_results: Dict[str, FusionResult] = {}
        self._tick_running = False

    # Lifecycle

    async def _start(self) -> bool:
        self.create_task(self._loop())
        if self.ticks is not None:
            self.create_task(self._consume_ticks())
        return True

    async def _stop(self) -> None:
        pass

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.trading_config.tick_interval
        next_due = loop.time()
        while not self._stop_event.is_set():
            await self.run_tick()

            next_due += interval
            now = loop.time()
            if now > next_due:
                missed = int((now - next_due) // interval) + 1
                self.skipped_ticks += missed
                self.logger.warning(f"Tick overran its interval, skipping {missed} tick(s)")
                next_due += missed * interval
            if await self._sleep_or_stop(next_due - now):
                break

    async def _consume_ticks(self) -> None:
        while not self._stop_event.is_set():
            tick = await self.ticks.get()
            await self.check_orders_on_tick(tick)

    async def check_orders_on_tick(self, tick: PriceTick) -> Optional[OrderCheckResult]:
        """Check the ticked symbol's active orders at the tick price."""
        if not self.order_manager.get_active_orders(tick.symbol):
            return None

        async def tick_price(symbol: str) -> Decimal:
            return tick.price

        try:
            result = await self.order_manager.check_orders(tick_price, symbols=[tick.symbol])
        except OptivestError as e:
            self.record_error(e)
            self.logger.error(f"Order check on {tick.symbol} tick failed: {e}")
            return None
        self.tick_checks += 1
        return result

    # Ticks

    async def run_tick(self) -> TickReport:
        """Run one tick now, or report it skipped if one is already running."""
        if self._tick_running:
            self.skipped_ticks += 1
            self.logger.warning("Previous tick still running, skipping this one")
            return TickReport(tick_number=self.tick_count, skipped=True)

        self._tick_running = True
        try:
            self.tick_count += 1
            report = await self._tick(TickReport(tick_number=self.tick_count))
            report.finished_at = datetime.now(timezone.utc)
            self.last_report = report
            self.health.tasks_completed += 1
            return report
        finally:
            self._tick_running = False

    async def _tick(self, report: TickReport) -> TickReport:
        try:
            report.orders = await self.order_manager.check_orders(self.price_lookup)
        except OptivestError as e:
            self.record_error(e)
            self.logger.error(f"Order check failed: {e}")

        report.trading_enabled = self.ledger.trading_enabled
        if not report.trading_enabled:
            return report

        for symbol in list(self.symbols()):
            try:
                await self.process_symbol(symbol, report)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # One symbol's failure never stops the others
                self.record_error(e)
                report.errors[symbol] = str(e)
                self.logger.error(f"Analysis of {symbol} failed: {e}")

        return report

    async def process_symbol(self, symbol: str, report: TickReport) -> Optional[FusedDecision]:
        candles = await self.candle_source.get_candles(
            symbol, self.trading_config.timeframe, self.trading_config.candle_limit
        )
        result = self.fusion.evaluate(candles, symbol=symbol)
        self.latest_results[symbol] = result
        decision = result.decision
        report.decisions[symbol] = decision.signal.value

        if not decision.is_actionable or decision.confidence <= self.trading_config.min_confidence:
            return decision

        if self.in_cooldown(symbol):
            report.cooldown.append(symbol)
            self.logger.debug(f"{symbol} in cooldown, {decision.signal.value} ignored")
            return decision

        price = await self._entry_price(symbol, candles)
        if decision.signal == SignalDirection.BUY:
            trade_id = await self._buy(symbol, price, decision)
        else:
            trade_id = await self._sell(symbol, price)
        if trade_id:
            report.trades.append(trade_id)
        return decision

    def in_cooldown(self, symbol: str) -> bool:
        last = self.ledger.last_trade_time(symbol)
        if last is None:
            return False
        elapsed = (self.ledger.clock() - last).total_seconds()
        return elapsed < self.trading_config.trade_cooldown

    async def _entry_price(self, symbol: str, candles: List[Candle]) -> Decimal:
        try:
            price = await self.price_lookup(symbol)
            if price is not None and price > 0:
                return Decimal(str(price))
        except DataUnavailable as e:
            self.logger.debug(f"Live price unavailable for {symbol}, using last close: {e}")
        return Decimal(str(candles[-1].close))

    def position_notional(self, symbol: str, price: Decimal, confidence: float) -> Decimal:
        """Quote amount for a BUY: tiered share of the balance, capped by exposure."""
        _, quote = split_symbol(symbol)
        balance = self.ledger.balance_of(quote)
        notional = balance * self.trading_config.position_percent(confidence) / Decimal("100")
        exposure = self.ledger.holdings(symbol) * price
        room = self.risk_config.max_asset_exposure - exposure
        return max(Decimal("0"), min(notional, room))

    async def _buy(self, symbol: str, price: Decimal, decision: FusedDecision) -> Optional[str]:
        adapter = get_trading_adapter(self.logger, symbol=symbol, strategy=decision.strategy_set)
        notional = self.position_notional(symbol, price, decision.confidence)
        if notional < self.trading_config.min_trade_notional or notional <= 0:
            adapter.info(f"BUY skipped, position size {notional:.2f} below minimum or exposure cap reached")
            return None

        amount = (notional / price).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
        if amount <= 0:
            return None

        trade = await self.ledger.execute_trade(
            symbol, OrderSide.BUY, amount, price, source=TradeSource.STRATEGY
        )
        adapter.info(f"BUY {amount} @ {price} (confidence {decision.confidence:.2f})")

        try:
            await self.order_manager.create_bracket(
                symbol, price, amount, decision.support, decision.resistance
            )
        except InvalidOrder as e:
            adapter.warning(f"Exit orders not created: {e}")
        return trade.trade_id

    async def _sell(self, symbol: str, price: Decimal) -> Optional[str]:
        held = self.ledger.holdings(symbol)
        amount = (held * self.trading_config.sell_fraction).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
        if amount <= 0 or amount * price < self.trading_config.min_trade_notional:
            self.logger.debug(f"SELL {symbol} skipped, holding too small")
            return None

        trade = await self.ledger.execute_trade(
            symbol, OrderSide.SELL, amount, price, source=TradeSource.STRATEGY
        )
        get_trading_adapter(self.logger, symbol=symbol).info(f"SELL {amount} @ {price}")
        await self.order_manager.cleanup_invalid_orders()
        return trade.trade_id

    def _health_details(self) -> Dict[str, object]:
        return {
            "tick_count": self.tick_count,
            "skipped_ticks": self.skipped_ticks,
            "tick_checks": self.tick_checks,
            "tick_running": self._tick_running,
        }
