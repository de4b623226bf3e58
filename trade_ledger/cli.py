"""
CLI entrypoint for the trade ledger.

Provides commands for running the worker, publishing trades, and inspecting
the ledger.
"""
import asyncio
import typer
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from trade_ledger.config.config import DEFAULT_CONFIG_PATH, Config, load_config
from trade_ledger.config.dotenv_loader import load_dotenv_files
from trade_ledger.monitoring.logger import setup_logging

app = typer.Typer(
    name="trade-ledger",
    help="Trade ingestion worker and position ledger",
    add_completion=False,
)

ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file")


def _bootstrap(config_path: Path) -> Config:
    load_dotenv_files()
    config = load_config(config_path)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


def _decimal(value: str, name: str) -> Decimal:
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"{name} must be a decimal number, got {value!r}")
    if not parsed.is_finite() or parsed <= 0:
        raise typer.BadParameter(f"{name} must be positive, got {value!r}")
    return parsed


def _trade_date(value: Optional[str]) -> date:
    if not value:
        return date.today()
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"--date must be YYYY-MM-DD, got {value!r}")


@app.command()
def worker(config_path: Path = ConfigOption):
    """
    Run the trade processing worker until SIGINT/SIGTERM.

    Example:
        trade-ledger worker --config trade_ledger/config/config.yaml
    """
    config = _bootstrap(config_path)
    from trade_ledger.worker.runner import run_worker

    asyncio.run(run_worker(config))


@app.command()
def publish(
    user: str = typer.Option(..., "--user", help="Owning user id"),
    symbol: str = typer.Option(..., "--symbol", help="Stock symbol, e.g. AAPL"),
    side: str = typer.Option(..., "--side", help="buy or sell"),
    quantity: int = typer.Option(..., "--quantity", min=1, help="Whole number of shares"),
    price: str = typer.Option(..., "--price", help="Price with at most 2 decimals"),
    trade_date: Optional[str] = typer.Option(None, "--date", help="Trade date (YYYY-MM-DD), default today"),
    bulk: bool = typer.Option(False, "--bulk", help="Publish on trade.create.bulk instead of single"),
    idempotency_key: Optional[str] = typer.Option(None, "--idempotency-key", help="Dedup key for redelivery"),
    config_path: Path = ConfigOption,
):
    """
    Publish one trade onto the trade exchange.

    Example:
        trade-ledger publish --user 0190... --symbol AAPL --side buy --quantity 10 --price 100
    """
    config = _bootstrap(config_path)

    from trade_ledger.domain.models import TradeIntent, TradeSide
    from trade_ledger.messaging.connection import BrokerConnectionManager
    from trade_ledger.messaging.producer import publish_trades

    try:
        parsed_side = TradeSide(side.lower())
    except ValueError:
        raise typer.BadParameter("side must be 'buy' or 'sell'")
    parsed_price = _decimal(price, "price")
    if parsed_price.as_tuple().exponent < -2:
        raise typer.BadParameter("price allows at most 2 decimal places")

    intent = TradeIntent(
        user_id=user,
        symbol=symbol.upper(),
        side=parsed_side,
        quantity=Decimal(quantity),
        price=parsed_price,
        trade_date=_trade_date(trade_date),
        idempotency_key=idempotency_key,
    )

    async def run_publish() -> str:
        manager = BrokerConnectionManager(config.broker)
        try:
            return await publish_trades(manager, config.trade_queue, [intent], bulk=bulk)
        finally:
            await manager.shutdown()

    message_id = asyncio.run(run_publish())
    typer.echo(f"Published {parsed_side.value} {quantity} {intent.symbol} @ {parsed_price} (message {message_id})")


@app.command(name="init-db")
def init_db_cmd(config_path: Path = ConfigOption):
    """Create the instruments, trades and positions tables if missing."""
    config = _bootstrap(config_path)
    from trade_ledger.storage.db import init_db

    db = init_db(config.require_database_url())
    db.dispose()
    typer.echo("Ledger tables ready")


@app.command(name="add-instrument")
def add_instrument(
    symbol: str = typer.Option(..., "--symbol", help="External stock symbol"),
    name: str = typer.Option(..., "--name", help="Instrument display name"),
    config_path: Path = ConfigOption,
):
    """Create or rename an instrument so trades referencing it can be resolved."""
    config = _bootstrap(config_path)
    from trade_ledger.storage.db import init_db
    from trade_ledger.storage.repository import upsert_instrument

    db = init_db(config.require_database_url(), create_tables=False)
    instrument_id = upsert_instrument(db, symbol.upper(), name)
    db.dispose()
    typer.echo(f"{symbol.upper()} -> instrument {instrument_id}")


@app.command()
def positions(
    user: str = typer.Option(..., "--user", help="User id"),
    config_path: Path = ConfigOption,
):
    """Print a user's positions."""
    config = _bootstrap(config_path)
    from trade_ledger.storage.db import init_db
    from trade_ledger.storage.repository import get_positions

    db = init_db(config.require_database_url(), create_tables=False)
    rows = get_positions(db, user)
    db.dispose()

    if not rows:
        typer.echo(f"No positions for {user}")
        return

    typer.echo(f"{'SYMBOL':<10}{'QUANTITY':>20}{'AVG COST':>20}")
    for row in rows:
        typer.echo(f"{row['symbol']:<10}{row['quantity']:>20}{row['average_cost']:>20}")


def _version_callback(value: bool) -> None:
    if value:
        from trade_ledger import __version__

        typer.echo(f"trade-ledger v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
):
    """
    Trade ledger

    Consumes trade-creation messages and keeps per-user positions reconciled.
    """


if __name__ == "__main__":
    app()
