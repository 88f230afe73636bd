"""
Unit tests for the paper trading engine facade.
"""

import json
import os
import random
from decimal import Decimal
from pathlib import Path

import pytest

from optivest.config import Config
from optivest.agents.price_feed import PriceFeed
from optivest.exceptions import DataUnavailable, InsufficientHoldings, InvalidOrder, StateLocked
from optivest.market.symbols import SymbolSelector
from optivest.models.market_data import PriceTick
from optivest.models.trading import OrderKind, OrderSide, TradeSource
from optivest.paper_trading.engine import PaperTradingEngine
from optivest.paper_trading.reports import RiskAnalysis, RiskLevel


@pytest.fixture
def source(fake_source_factory, make_candles):
    closes = [100.0 + i for i in range(60)]
    return fake_source_factory(
        candles={"BTC/USDT": make_candles(closes)},
        prices={"BTC/USDT": "45000", "ETH/USDT": "3000"},
    )


@pytest.fixture
def engine(test_config: Config, source, clock) -> PaperTradingEngine:
    return PaperTradingEngine(test_config, candle_source=source, clock=clock)


class TestEngineInitialization:
    """Loading state and choosing tracked symbols."""

    @pytest.mark.asyncio
    async def test_configured_symbols(self, engine: PaperTradingEngine):
        await engine.initialize()

        assert engine.tracked_symbols == ["BTC/USDT", "ETH/USDT"]
        assert engine.get_balance() == {"USDT": Decimal("10000")}
        assert engine.is_trading_running() is False
        assert engine.feed is None

    @pytest.mark.asyncio
    async def test_random_symbols_persisted(self, test_config: Config, source, temp_dir: Path):
        test_config.trading.tracked_symbols = None
        test_config.trading.tracked_symbols_count = 4
        selector = SymbolSelector(
            test_config.storage.symbols_file, count=4, rng=random.Random(11)
        )
        engine = PaperTradingEngine(test_config, candle_source=source, symbol_selector=selector)

        await engine.initialize()

        assert len(engine.tracked_symbols) == 4
        stored = json.loads((temp_dir / "selected_coins.json").read_text(encoding="utf-8"))
        assert stored == engine.tracked_symbols

    @pytest.mark.asyncio
    async def test_regenerate_symbols(self, engine: PaperTradingEngine):
        await engine.initialize()

        fresh = await engine.regenerate_tracked_symbols()

        assert engine.tracked_symbols == fresh
        assert len(fresh) == engine.config.trading.tracked_symbols_count

    @pytest.mark.asyncio
    async def test_auto_start(self, test_config: Config, source):
        test_config.trading.auto_start = True
        engine = PaperTradingEngine(test_config, candle_source=source)

        await engine.initialize()

        assert engine.is_trading_running() is True

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, test_config: Config, source, clock):
        first = PaperTradingEngine(test_config, candle_source=source, clock=clock)
        await first.initialize()
        await first.execute_manual_trade("BTC/USDT", "buy", "0.02")

        second = PaperTradingEngine(test_config, candle_source=source, clock=clock)
        await second.initialize()

        assert second.get_balance()["BTC"] == Decimal("0.02")
        assert second.get_balance()["USDT"] == Decimal("9100")
        assert len(second.get_trade_history()) == 1


class TestManualTrading:
    """User-initiated trades and forced sells."""

    @pytest.mark.asyncio
    async def test_buy_at_current_price(self, engine: PaperTradingEngine):
        await engine.initialize()

        trade = await engine.execute_manual_trade("btcusdt", "buy", "0.02")

        assert trade.symbol == "BTC/USDT"
        assert trade.side == OrderSide.BUY
        assert trade.price == Decimal("45000")
        assert trade.source == TradeSource.MANUAL
        assert engine.get_balance()["USDT"] == Decimal("9100")

    @pytest.mark.asyncio
    async def test_buy_above_manual_limit(self, engine: PaperTradingEngine):
        await engine.initialize()

        with pytest.raises(InvalidOrder):
            await engine.execute_manual_trade("BTC/USDT", OrderSide.BUY, "0.03")

        assert engine.get_trade_history() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("side", ["hold", "", "short"])
    async def test_unknown_side_rejected(self, engine: PaperTradingEngine, side):
        await engine.initialize()

        with pytest.raises(InvalidOrder):
            await engine.execute_manual_trade("BTC/USDT", side, "0.01", price="45000")

        assert engine.get_trade_history() == []

    @pytest.mark.asyncio
    async def test_explicit_price(self, engine: PaperTradingEngine):
        await engine.initialize()

        trade = await engine.execute_manual_trade("SOL/USDT", "BUY", "5", price="20")

        assert trade.price == Decimal("20")
        assert engine.get_balance()["SOL"] == Decimal("5")

    @pytest.mark.asyncio
    async def test_no_price_available(self, engine: PaperTradingEngine):
        await engine.initialize()

        with pytest.raises(DataUnavailable):
            await engine.get_current_price("SOL/USDT")
        with pytest.raises(DataUnavailable):
            await engine.execute_manual_trade("SOL/USDT", "buy", "1")

    @pytest.mark.asyncio
    async def test_sell_without_holdings(self, engine: PaperTradingEngine):
        await engine.initialize()

        with pytest.raises(InsufficientHoldings):
            await engine.execute_manual_trade("ETH/USDT", "sell", "1")

    @pytest.mark.asyncio
    async def test_manual_sell_cancels_uncovered_orders(self, engine: PaperTradingEngine):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")
        await engine.create_stop_loss_order("BTC/USDT", "44000", "0.02")

        await engine.execute_manual_trade("BTC/USDT", "sell", "0.01")

        assert engine.get_active_orders("BTC/USDT") == []

    @pytest.mark.asyncio
    async def test_force_sell_half(self, engine: PaperTradingEngine):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")
        await engine.create_take_profit_order("BTC/USDT", "47000", "0.02")

        trade = await engine.force_sell_position("BTC/USDT")

        assert trade.amount == Decimal("0.01")
        assert trade.side == OrderSide.SELL
        assert engine.get_balance()["BTC"] == Decimal("0.01")
        assert engine.get_balance()["USDT"] == Decimal("9550")
        assert engine.get_active_orders() == []

    @pytest.mark.asyncio
    async def test_force_sell_without_holding(self, engine: PaperTradingEngine):
        await engine.initialize()

        assert await engine.force_sell_position("ETH/USDT", 100) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("percentage", ["0", "150", "-5"])
    async def test_force_sell_bad_percentage(self, engine: PaperTradingEngine, percentage):
        await engine.initialize()

        with pytest.raises(InvalidOrder):
            await engine.force_sell_position("BTC/USDT", percentage)


class TestOrdersThroughEngine:
    """Exit orders created and triggered via the facade."""

    @pytest.mark.asyncio
    async def test_stop_loss_triggers(self, engine: PaperTradingEngine, source):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")
        order = await engine.create_stop_loss_order("BTC/USDT", "44000", "0.01")

        source.prices["BTC/USDT"] = Decimal("43500")
        result = await engine.check_orders()

        assert result.executed == [order.order_id]
        assert engine.get_balance()["USDT"] == Decimal("9535")
        assert engine.get_active_orders(kind=OrderKind.STOP_LOSS) == []

    @pytest.mark.asyncio
    async def test_cancel_order(self, engine: PaperTradingEngine):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")
        order = await engine.create_take_profit_order("BTC/USDT", "47000", "0.02")

        cancelled = await engine.cancel_order(order.order_id)

        assert cancelled.order_id == order.order_id
        assert await engine.cancel_order("missing") is None
        assert engine.get_active_orders() == []

    @pytest.mark.asyncio
    async def test_bracket_with_configured_percentages(self, engine: PaperTradingEngine):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")

        report = await engine.create_bracket("BTC/USDT", "45000", "0.02")

        assert report.stop_loss_price == Decimal("43650")
        assert report.take_profit_price == Decimal("47700")
        assert report.stop_loss_percent == Decimal("3")
        assert report.take_profit_percent == Decimal("6")
        orders = engine.get_active_orders("BTC/USDT")
        assert {o.order_id for o in orders} == {report.stop_loss_order_id, report.take_profit_order_id}

    @pytest.mark.asyncio
    async def test_bracket_with_given_percentages(self, engine: PaperTradingEngine):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")

        report = await engine.create_bracket(
            "btcusdt", "45000", "0.01", stop_loss_percent=5, take_profit_percent=10
        )

        assert report.symbol == "BTC/USDT"
        assert report.stop_loss_price == Decimal("42750")
        assert report.take_profit_price == Decimal("49500")
        assert report.amount == Decimal("0.01")

    @pytest.mark.asyncio
    async def test_bracket_rejected(self, engine: PaperTradingEngine):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")

        with pytest.raises(InvalidOrder):
            await engine.create_bracket("BTC/USDT", "45000", "0.02", stop_loss_percent=100)
        with pytest.raises(InvalidOrder):
            await engine.create_bracket("BTC/USDT", "45000", "0.05")

        assert engine.get_active_orders() == []


class TestRebalance:
    """Trimming the largest holdings when cash runs low."""

    @pytest.fixture
    def rich_engine(self, engine: PaperTradingEngine, source) -> PaperTradingEngine:
        engine.config.risk.max_manual_trade = Decimal("100000")
        source.prices["SOL/USDT"] = Decimal("100")
        source.prices["ADA/USDT"] = Decimal("0.5")
        return engine

    @pytest.mark.asyncio
    async def test_nothing_to_do_with_enough_cash(self, rich_engine: PaperTradingEngine):
        await rich_engine.initialize()
        await rich_engine.execute_manual_trade("BTC/USDT", "buy", "0.1")

        report = await rich_engine.rebalance_portfolio()

        assert report.rebalanced is False
        assert report.quote_percent == Decimal("55")
        assert report.trades == []
        assert len(rich_engine.get_trade_history()) == 1

    @pytest.mark.asyncio
    async def test_sells_part_of_three_largest(self, rich_engine: PaperTradingEngine):
        await rich_engine.initialize()
        await rich_engine.execute_manual_trade("BTC/USDT", "buy", "0.1")
        await rich_engine.execute_manual_trade("ETH/USDT", "buy", "1")
        await rich_engine.execute_manual_trade("SOL/USDT", "buy", "15")
        await rich_engine.execute_manual_trade("ADA/USDT", "buy", "800")
        await rich_engine.create_stop_loss_order("SOL/USDT", "90", "15")

        report = await rich_engine.rebalance_portfolio()

        assert report.rebalanced is True
        assert report.quote_percent == Decimal("6")
        assert len(report.trades) == 3
        balance = rich_engine.get_balance()
        assert balance["BTC"] == Decimal("0.07")
        assert balance["ETH"] == Decimal("0.7")
        assert balance["SOL"] == Decimal("10.5")
        assert balance["ADA"] == Decimal("800")
        assert all(t.source is TradeSource.REBALANCE for t in rich_engine.get_trade_history(3))
        assert rich_engine.get_active_orders("SOL/USDT") == []

    @pytest.mark.asyncio
    async def test_small_and_unpriced_holdings_kept(self, rich_engine: PaperTradingEngine):
        await rich_engine.initialize()
        await rich_engine.execute_manual_trade("BTC/USDT", "buy", "0.19")
        await rich_engine.execute_manual_trade("LINK/USDT", "buy", "30", price="20")
        await rich_engine.execute_manual_trade("ETH/USDT", "buy", "0.05")

        report = await rich_engine.rebalance_portfolio()

        assert report.quote_percent == Decimal("7")
        assert len(report.trades) == 1
        balance = rich_engine.get_balance()
        assert balance["BTC"] == Decimal("0.133")
        assert balance["LINK"] == Decimal("30")
        assert balance["ETH"] == Decimal("0.05")


class TestReports:
    """Balance, performance and risk reporting."""

    @pytest.mark.asyncio
    async def test_balance_report_values_holdings(self, engine: PaperTradingEngine, source):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")
        source.prices["BTC/USDT"] = Decimal("50000")

        report = await engine.get_balance_report()

        assert report.available_balance == Decimal("9100")
        assert len(report.holdings) == 1
        holding = report.holdings[0]
        assert holding.currency == "BTC"
        assert holding.value == Decimal("1000")
        assert holding.unrealized_pnl == Decimal("100")
        assert report.total_value == Decimal("10100")
        assert report.total_pnl == Decimal("100")
        assert report.partial is False

    @pytest.mark.asyncio
    async def test_holding_without_price(self, engine: PaperTradingEngine):
        await engine.initialize()
        await engine.execute_manual_trade("SOL/USDT", "buy", "5", price="20")

        report = await engine.get_balance_report()

        holding = report.holdings[0]
        assert holding.price is None
        assert holding.priced is False
        assert holding.value == Decimal("100")
        assert report.partial is True
        assert report.total_value == Decimal("10000")

    @pytest.mark.asyncio
    async def test_performance_report(self, engine: PaperTradingEngine, source):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")
        source.prices["BTC/USDT"] = Decimal("46000")
        await engine.execute_manual_trade("BTC/USDT", "sell", "0.01")

        report = await engine.get_performance_report()

        assert report.total_trades == 2
        assert report.buy_trades == 1
        assert report.sell_trades == 1
        assert report.success_rate == 100.0
        assert report.realized_pnl == Decimal("10")
        assert report.profit == Decimal("20")

    @pytest.mark.asyncio
    async def test_risk_low_when_mostly_cash(self, engine: PaperTradingEngine):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")

        risk = await engine.get_risk_analysis()

        assert risk.risk_level == RiskLevel.LOW
        assert risk.quote_percent == Decimal("91")
        assert risk.diversification == Decimal("9")

    def test_risk_levels(self):
        assert RiskAnalysis.from_values(Decimal("600"), Decimal("1000")).risk_level == RiskLevel.MEDIUM
        assert RiskAnalysis.from_values(Decimal("500"), Decimal("1000")).risk_level == RiskLevel.HIGH
        assert RiskAnalysis.from_values(Decimal("0"), Decimal("0")).risk_level == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_deposit_and_reset(self, engine: PaperTradingEngine):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")

        assert await engine.add_balance("500") == Decimal("9600")

        await engine.reset_balance()
        assert engine.get_balance() == {"USDT": Decimal("10000")}
        assert engine.get_trade_history() == []

    @pytest.mark.asyncio
    async def test_trading_toggle(self, engine: PaperTradingEngine):
        await engine.initialize()

        await engine.start_trading()
        assert engine.get_status().trading_enabled is True
        await engine.stop_trading()
        assert engine.is_trading_running() is False


class TestSignalsAndStatus:
    """Signal summaries, status and lifecycle."""

    @pytest.mark.asyncio
    async def test_current_signals(self, engine: PaperTradingEngine):
        await engine.initialize()

        summaries = await engine.get_current_signals()

        assert [s.symbol for s in summaries] == ["BTC/USDT", "ETH/USDT"]
        btc, eth = summaries
        assert btc.error is None
        assert btc.signal is not None
        assert btc.price == pytest.approx(159.0)
        assert set(btc.strategies) <= set(engine.fusion.weights)
        assert eth.signal is None
        assert "ETH/USDT" in eth.error

    @pytest.mark.asyncio
    async def test_signal_limit(self, engine: PaperTradingEngine):
        await engine.initialize()

        assert len(await engine.get_current_signals(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_status(self, engine: PaperTradingEngine):
        await engine.initialize()
        await engine.execute_manual_trade("BTC/USDT", "buy", "0.02")
        await engine.create_stop_loss_order("BTC/USDT", "44000", "0.02")

        status = engine.get_status()

        assert status.running is False
        assert status.strategy_set == "fusion_v2"
        assert status.tracked_symbols == ["BTC/USDT", "ETH/USDT"]
        assert status.feed_status is None
        assert status.total_trades == 1
        assert status.active_orders == 1
        assert status.persistence_failures == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine: PaperTradingEngine, source, temp_dir: Path):
        await engine.start(install_signal_handlers=False)

        assert engine.is_running
        assert engine.scheduler.is_running
        assert "scheduler" in engine.get_health()

        await engine.stop()

        assert not engine.is_running
        assert engine.scheduler.is_stopped
        assert engine.shutdown_event.is_set()
        assert source.closed
        assert (temp_dir / "paper_trading_data.json").exists()

    @pytest.mark.asyncio
    async def test_feed_ticks_reach_scheduler(self, test_config: Config, source):
        feed = PriceFeed([], test_config.feed)
        engine = PaperTradingEngine(test_config, candle_source=source, feed=feed)

        feed.publish(PriceTick(symbol="BTC/USDT", price=Decimal("45000")))

        assert engine.scheduler.ticks is engine.tick_queue
        assert engine.tick_queue.get_nowait().price == Decimal("45000")


class TestStateLock:
    """One process at a time writes the state file."""

    @pytest.mark.asyncio
    async def test_second_writer_refused_while_running(self, engine: PaperTradingEngine, test_config: Config, source):
        await engine.start(install_signal_handlers=False)
        other = PaperTradingEngine(test_config, candle_source=source)
        try:
            with pytest.raises(StateLocked) as exc_info:
                other.acquire_state_lock()
            assert exc_info.value.pid == os.getpid()
        finally:
            await engine.stop()

        other.acquire_state_lock()
        assert other.state_lock.held
        other.release_state_lock()
        assert not other.state_lock.path.exists()

    @pytest.mark.asyncio
    async def test_lock_released_on_stop(self, engine: PaperTradingEngine):
        await engine.start(install_signal_handlers=False)
        assert engine.state_lock.owner() == os.getpid()

        await engine.stop()

        assert not engine.state_lock.path.exists()
