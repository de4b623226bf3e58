"""
CLI commands against a file-backed SQLite ledger.
"""
import pytest
from typer.testing import CliRunner

from trade_ledger.cli import app
from trade_ledger.ingest.recorder import TradeRecorder
from trade_ledger.storage.db import Database

from conftest import USER_A

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "environment: dev\n"
        "monitoring:\n"
        "  log_level: WARNING\n"
        "  log_format: text\n"
        "data:\n"
        f"  database_url: sqlite:///{tmp_path / 'ledger.db'}\n"
    )
    return path


def test_version():
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert "trade-ledger v1.0.0" in result.output


def test_init_add_instrument_and_list_positions(config_file, tmp_path, make_trade):
    assert runner.invoke(app, ["init-db", "--config", str(config_file)]).exit_code == 0

    added = runner.invoke(app, ["add-instrument", "--symbol", "aapl", "--name", "Apple Inc.", "--config", str(config_file)])
    assert added.exit_code == 0
    assert "AAPL -> instrument 1" in added.output

    empty = runner.invoke(app, ["positions", "--user", USER_A, "--config", str(config_file)])
    assert f"No positions for {USER_A}" in empty.output

    db = Database(f"sqlite:///{tmp_path / 'ledger.db'}")
    TradeRecorder(db).record([make_trade("buy", "10", "100"), make_trade("buy", "10", "200")])
    db.dispose()

    listed = runner.invoke(app, ["positions", "--user", USER_A, "--config", str(config_file)])
    assert listed.exit_code == 0
    assert "AAPL" in listed.output
    assert "150" in listed.output


@pytest.mark.parametrize(
    "args",
    [
        ["--side", "hold", "--price", "10"],
        ["--side", "buy", "--price", "abc"],
        ["--side", "buy", "--price", "10.123"],
        ["--side", "buy", "--price", "10", "--date", "15/01/2024"],
    ],
)
def test_publish_rejects_bad_input_before_connecting(config_file, args):
    base = ["publish", "--user", USER_A, "--symbol", "AAPL", "--quantity", "1", "--config", str(config_file)]

    result = runner.invoke(app, base + args)

    assert result.exit_code == 2
