"""
Command-line interface for the Optivest paper trading engine.
"""

import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config
from .exceptions import OptivestError
from .logger import configure_logging, get_logger
from .models.trading import OrderKind
from .paper_trading.engine import PaperTradingEngine


console = Console()

T = TypeVar("T")


def _with_engine(
    ctx: click.Context,
    action: Callable[[PaperTradingEngine], Awaitable[T]],
    mutating: bool = False,
) -> T:
    """
    Run one action against an initialized engine, then release its connections.

    Mutating actions take the state lock first and fail while another
    process, such as a running engine, holds it.
    """
    config: Config = ctx.obj["config"]

    async def run() -> T:
        engine = PaperTradingEngine(config)
        if mutating:
            engine.acquire_state_lock()
        try:
            await engine.initialize()
            return await action(engine)
        finally:
            engine.release_state_lock()
            await engine.candle_source.close()

    try:
        return asyncio.run(run())
    except OptivestError as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="optivest")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to YAML configuration file"
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose logging"
)
@click.pass_context
def main(ctx: click.Context, config: Optional[Path], verbose: bool) -> None:
    """
    Optivest: Crypto Paper Trading Engine

    Simulated trading of USDT pairs driven by a weighted vote of
    technical strategies.
    """
    ctx.ensure_object(dict)

    try:
        if config:
            ctx.obj["config"] = Config.from_file(config)
        else:
            ctx.obj["config"] = Config.load_from_env()
    except (OSError, ValueError) as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)

    if verbose:
        ctx.obj["config"].logging.level = "DEBUG"

    settings = ctx.obj["config"].logging
    configure_logging(settings.level, settings.file_path, settings.max_size, settings.backup_count)
    ctx.obj["logger"] = get_logger("optivest.cli", settings.level)


@main.command()
@click.option("--trade/--no-trade", default=None, help="Enable or disable automated trading on start")
@click.pass_context
def run(ctx: click.Context, trade: Optional[bool]) -> None:
    """Run the engine until interrupted."""
    config: Config = ctx.obj["config"]

    async def serve() -> None:
        engine = PaperTradingEngine(config)
        engine.acquire_state_lock()
        try:
            await engine.initialize()
            if trade is True:
                await engine.start_trading()
            elif trade is False:
                await engine.stop_trading()
            console.print(
                f"[blue]🚀 Starting engine[/blue] with {len(engine.tracked_symbols)} symbols "
                f"({', '.join(engine.tracked_symbols)})"
            )
            await engine.run_forever()
        finally:
            engine.release_state_lock()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        console.print("\n[yellow]Engine stopped[/yellow]")
    except OptivestError as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show engine status and configuration."""
    config: Config = ctx.obj["config"]
    engine_status = _with_engine(ctx, lambda engine: _async(engine.get_status()))

    table = Table(title="Optivest Status", show_header=True, header_style="bold magenta")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Automated trading", "running" if engine_status.trading_enabled else "stopped")
    table.add_row("Strategy set", engine_status.strategy_set)
    table.add_row("Tracked symbols", ", ".join(engine_status.tracked_symbols))
    table.add_row("Total trades", str(engine_status.total_trades))
    table.add_row("Active orders", str(engine_status.active_orders))
    table.add_row("Tick interval", f"{config.trading.tick_interval:g}s")
    table.add_row("Min confidence", f"{config.trading.min_confidence:.2f}")
    table.add_row("Stop loss / take profit", f"{config.risk.stop_loss_percent}% / {config.risk.take_profit_percent}%")
    table.add_row("State file", config.storage.state_file)
    console.print(table)
    ctx.obj["logger"].info("Status command executed")


@main.command()
@click.pass_context
def balance(ctx: click.Context) -> None:
    """Show balances, holdings and risk."""

    async def collect(engine: PaperTradingEngine):
        return await engine.get_balance_report(), await engine.get_risk_analysis()

    report, risk = _with_engine(ctx, collect)

    table = Table(title="Holdings", show_header=True, header_style="bold magenta")
    table.add_column("Asset", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Value", justify="right", style="green")
    table.add_column("Unrealized P&L", justify="right")
    table.add_row(report.quote_currency, f"{report.available_balance:,.2f}", "", f"{report.available_balance:,.2f}", "")
    for holding in report.holdings:
        pnl = holding.unrealized_pnl
        table.add_row(
            holding.currency,
            f"{holding.amount}",
            f"{holding.price:,.4f}" if holding.price is not None else "n/a",
            f"{holding.value:,.2f}" if holding.priced else f"{holding.value:,.2f} (cost)",
            f"{pnl:+,.2f}" if pnl is not None else "n/a",
        )
    console.print(table)
    console.print(
        f"Total value: [bold]{report.total_value:,.2f} {report.quote_currency}[/bold] "
        f"(P&L {report.total_pnl:+,.2f}), risk [bold]{risk.risk_level.value}[/bold]: {risk.recommendation}"
    )
    if report.partial:
        console.print("[yellow]Some holdings have no current price and are valued at cost[/yellow]")


@main.command()
@click.option("--limit", "-n", default=20, type=int, help="Number of trades to show")
@click.pass_context
def history(ctx: click.Context, limit: int) -> None:
    """Show the most recent trades."""
    trades = _with_engine(ctx, lambda engine: _async(engine.get_trade_history(limit)))
    if not trades:
        console.print("No trades yet")
        return

    table = Table(title="Trade History", show_header=True, header_style="bold magenta")
    for column in ("Time", "Symbol", "Side", "Amount", "Price", "Total", "Source"):
        table.add_column(column)
    for trade in trades:
        colour = "green" if trade.side.value == "BUY" else "red"
        table.add_row(
            trade.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            trade.symbol,
            f"[{colour}]{trade.side.value}[/{colour}]",
            f"{trade.amount}",
            f"{trade.price:,.4f}",
            f"{trade.total:,.2f}",
            trade.source.value,
        )
    console.print(table)


@main.command()
@click.argument("side", type=click.Choice(["buy", "sell"], case_sensitive=False))
@click.argument("symbol")
@click.argument("amount", type=str)
@click.option("--price", type=str, default=None, help="Execution price (default: current price)")
@click.pass_context
def trade(ctx: click.Context, side: str, symbol: str, amount: str, price: Optional[str]) -> None:
    """Execute a manual paper trade."""
    record = _with_engine(
        ctx, lambda engine: engine.execute_manual_trade(symbol, side, amount, price), mutating=True
    )
    console.print(
        f"[green]✓[/green] {record.side.value} {record.amount} {record.symbol} @ {record.price} "
        f"({record.trade_id})"
    )


@main.command("sell-position")
@click.argument("symbol")
@click.option("--percentage", "-p", default="50", help="Share of the holding to sell")
@click.pass_context
def sell_position(ctx: click.Context, symbol: str, percentage: str) -> None:
    """Sell a share of a holding at the current price."""
    record = _with_engine(ctx, lambda engine: engine.force_sell_position(symbol, percentage), mutating=True)
    if record is None:
        console.print(f"No {symbol} holding to sell")
        return
    console.print(f"[green]✓[/green] Sold {record.amount} {record.symbol} @ {record.price}")


@main.command()
@click.argument("symbol")
@click.argument("entry_price", type=str)
@click.argument("amount", type=str)
@click.option("--stop-loss", "stop_loss", type=str, default=None, help="Stop-loss distance in percent")
@click.option("--take-profit", "take_profit", type=str, default=None, help="Take-profit distance in percent")
@click.pass_context
def bracket(
    ctx: click.Context,
    symbol: str,
    entry_price: str,
    amount: str,
    stop_loss: Optional[str],
    take_profit: Optional[str],
) -> None:
    """Place a stop-loss and a take-profit around an entry price."""
    report = _with_engine(
        ctx,
        lambda engine: engine.create_bracket(symbol, entry_price, amount, stop_loss, take_profit),
        mutating=True,
    )
    console.print(
        f"[green]✓[/green] {report.symbol} {report.amount}: stop {report.stop_loss_price} "
        f"(-{report.stop_loss_percent}%), target {report.take_profit_price} (+{report.take_profit_percent}%)"
    )


@main.command()
@click.pass_context
def rebalance(ctx: click.Context) -> None:
    """Sell part of the largest holdings when cash is low."""
    report = _with_engine(ctx, lambda engine: engine.rebalance_portfolio(), mutating=True)
    if not report.rebalanced:
        console.print(
            f"No rebalance: {report.quote_percent:.1f}% in cash (threshold {report.threshold_percent}%)"
        )
    else:
        console.print(f"[green]✓[/green] Rebalanced with {len(report.trades)} sale(s)")
    for symbol, error in report.errors.items():
        console.print(f"[red]✗[/red] {symbol}: {error}")


@main.group()
def orders() -> None:
    """Manage stop-loss and take-profit orders."""


@orders.command("list")
@click.option("--symbol", default=None, help="Only orders for this symbol")
@click.pass_context
def list_orders(ctx: click.Context, symbol: Optional[str]) -> None:
    """Show active orders."""
    active = _with_engine(ctx, lambda engine: _async(engine.get_active_orders(symbol)))
    if not active:
        console.print("No active orders")
        return

    table = Table(title="Active Orders", show_header=True, header_style="bold magenta")
    for column in ("Order", "Symbol", "Type", "Trigger", "Amount", "Created"):
        table.add_column(column)
    for order in active:
        table.add_row(
            order.order_id,
            order.symbol,
            order.kind.value,
            f"{order.trigger_price}",
            f"{order.amount}",
            order.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@orders.command("create")
@click.argument("kind", type=click.Choice([k.value for k in OrderKind], case_sensitive=False))
@click.argument("symbol")
@click.argument("trigger_price", type=str)
@click.argument("amount", type=str)
@click.pass_context
def create_order(ctx: click.Context, kind: str, symbol: str, trigger_price: str, amount: str) -> None:
    """Create a stop-loss or take-profit order."""
    order_kind = OrderKind(kind.upper())

    async def create(engine: PaperTradingEngine):
        if order_kind is OrderKind.STOP_LOSS:
            return await engine.create_stop_loss_order(symbol, trigger_price, amount)
        return await engine.create_take_profit_order(symbol, trigger_price, amount)

    order = _with_engine(ctx, create, mutating=True)
    console.print(f"[green]✓[/green] {order.kind.value} {order.order_id} at {order.trigger_price}")


@orders.command("cancel")
@click.argument("order_id")
@click.pass_context
def cancel(ctx: click.Context, order_id: str) -> None:
    """Cancel an active order."""
    order = _with_engine(ctx, lambda engine: engine.cancel_order(order_id), mutating=True)
    if order is None:
        console.print(f"[yellow]No active order {order_id}[/yellow]")
        return
    console.print(f"[green]✓[/green] Order {order_id} cancelled")


@main.command()
@click.argument("state", type=click.Choice(["on", "off"]))
@click.pass_context
def trading(ctx: click.Context, state: str) -> None:
    """Turn automated trading on or off."""

    async def toggle(engine: PaperTradingEngine) -> bool:
        if state == "on":
            await engine.start_trading()
        else:
            await engine.stop_trading()
        return engine.is_trading_running()

    running = _with_engine(ctx, toggle, mutating=True)
    console.print(f"Automated trading {'running' if running else 'stopped'}")


@main.command()
@click.pass_context
def signals(ctx: click.Context) -> None:
    """Show current fused signals for the first tracked symbols."""
    summaries = _with_engine(ctx, lambda engine: engine.get_current_signals())

    table = Table(title="Current Signals", show_header=True, header_style="bold magenta")
    for column in ("Symbol", "Signal", "Confidence", "Price", "Strategies"):
        table.add_column(column)
    for summary in summaries:
        if summary.error:
            table.add_row(summary.symbol, "[red]error[/red]", "", "", summary.error)
            continue
        table.add_row(
            summary.symbol,
            summary.signal.value,
            f"{summary.confidence:.2f}",
            f"{summary.price:,.4f}" if summary.price is not None else "n/a",
            ", ".join(f"{name}={vote}" for name, vote in summary.strategies.items()),
        )
    console.print(table)


@main.command()
@click.option("--regenerate", is_flag=True, help="Draw a new set of tracked symbols")
@click.pass_context
def symbols(ctx: click.Context, regenerate: bool) -> None:
    """Show or regenerate the tracked symbols."""

    async def pick(engine: PaperTradingEngine):
        if regenerate:
            return await engine.regenerate_tracked_symbols()
        return list(engine.tracked_symbols)

    tracked = _with_engine(ctx, pick, mutating=regenerate)
    console.print("Tracked symbols: " + ", ".join(tracked))


@main.command()
@click.argument("amount", type=str)
@click.pass_context
def deposit(ctx: click.Context, amount: str) -> None:
    """Add virtual funds in the quote currency."""
    new_balance = _with_engine(ctx, lambda engine: engine.add_balance(amount), mutating=True)
    console.print(f"[green]✓[/green] Balance now {new_balance:,.2f}")


@main.command()
@click.confirmation_option(prompt="Reset the account to its initial balance?")
@click.pass_context
def reset(ctx: click.Context) -> None:
    """Reset balances, trades and orders."""
    _with_engine(ctx, lambda engine: engine.reset_balance(), mutating=True)
    console.print("[green]✓[/green] Account reset")


async def _async(value: T) -> T:
    return value


if __name__ == "__main__":
    main()
