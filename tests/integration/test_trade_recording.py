"""
Integration tests for TradeRecorder against an in-memory SQLite ledger.
"""
import pytest
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.exc import OperationalError as SAOperationalError

from trade_ledger.exceptions import (
    DataError,
    OversellError,
    TransientPersistenceError,
    UnresolvedInstrumentError,
)
from trade_ledger.ingest.recorder import TradeRecorder
from trade_ledger.reconciliation.engine import OversellPolicy, ReconcileAction
from trade_ledger.storage.repository import count_trades, get_position, get_positions

from conftest import USER_A, USER_B


def test_two_buys_persist_trades_and_weighted_position(db, instrument_ids, make_trade):
    """Buy 10 @ 100 then 10 @ 200 on separate messages -> 20 @ 150."""
    recorder = TradeRecorder(db)

    recorder.record([make_trade("buy", "10", "100")])
    summary = recorder.record([make_trade("buy", "10", "200")])

    assert summary.actions == [ReconcileAction.INCREASED]
    position = get_position(db, USER_A, instrument_ids["AAPL"])
    assert position.quantity == Decimal("20")
    assert position.average_cost == Decimal("150")
    assert count_trades(db, USER_A) == 2


def test_large_costs_round_trip_exactly(db, instrument_ids, make_trade):
    """20 significant digits do not survive a float; stored values must come back as written."""
    recorder = TradeRecorder(db)

    recorder.record([make_trade("buy", "1", "123456789012.34")])
    recorder.record([make_trade("buy", "2", "123456789012.35")])

    position = get_position(db, USER_A, instrument_ids["AAPL"])
    assert position.quantity == Decimal("3")
    assert position.average_cost == Decimal("123456789012.34666667")


def test_same_pair_in_one_bulk_applies_in_order(db, instrument_ids, make_trade):
    recorder = TradeRecorder(db)

    summary = recorder.record([
        make_trade("buy", "10", "100"),
        make_trade("buy", "10", "200"),
        make_trade("sell", "5", "300"),
    ])

    assert summary.actions == [ReconcileAction.OPENED, ReconcileAction.INCREASED, ReconcileAction.REDUCED]
    position = get_position(db, USER_A, instrument_ids["AAPL"])
    assert position.quantity == Decimal("15")
    assert position.average_cost == Decimal("150")


def test_oversell_clamps_and_keeps_cost(db, instrument_ids, make_trade):
    """20 @ 150, sell 25 -> 0 @ 150; the trade row is still recorded."""
    recorder = TradeRecorder(db, OversellPolicy.CLAMP)
    recorder.record([make_trade("buy", "10", "100"), make_trade("buy", "10", "200")])

    summary = recorder.record([make_trade("sell", "25", "180")])

    assert summary.actions == [ReconcileAction.CLAMPED]
    position = get_position(db, USER_A, instrument_ids["AAPL"])
    assert position.quantity == Decimal("0")
    assert position.average_cost == Decimal("150")
    assert count_trades(db) == 3


def test_oversell_reject_rolls_back_trade_and_position(db, instrument_ids, make_trade):
    recorder = TradeRecorder(db, OversellPolicy.REJECT)
    recorder.record([make_trade("buy", "10", "100")])

    with pytest.raises(OversellError):
        recorder.record([make_trade("sell", "25", "180")])

    assert count_trades(db) == 1
    assert get_position(db, USER_A, instrument_ids["AAPL"]).quantity == Decimal("10")


def test_sell_without_position_records_trade_only_under_clamp(db, instrument_ids, make_trade):
    summary = TradeRecorder(db).record([make_trade("sell", "5", "100")])

    assert summary.actions == [ReconcileAction.IGNORED]
    assert count_trades(db) == 1
    assert get_position(db, USER_A, instrument_ids["AAPL"]) is None


def test_unresolvable_symbol_fails_whole_bulk(db, make_trade):
    """One good and one unknown symbol -> nothing persisted."""
    recorder = TradeRecorder(db)

    with pytest.raises(UnresolvedInstrumentError) as exc_info:
        recorder.record([make_trade(symbol="AAPL"), make_trade(symbol="ZZZZ")])

    assert exc_info.value.symbols == ["ZZZZ"]
    assert count_trades(db) == 0
    assert get_positions(db, USER_A) == []


def test_failure_midway_rolls_back_earlier_trades(db, make_trade):
    recorder = TradeRecorder(db)
    calls = {"n": 0}

    from trade_ledger.ingest import recorder as recorder_module
    real_save = recorder_module.save_position

    def failing_save(session, position):
        calls["n"] += 1
        if calls["n"] == 2:
            raise SAOperationalError("UPDATE positions", {}, Exception("connection reset"))
        return real_save(session, position)

    with patch.object(recorder_module, "save_position", failing_save):
        with pytest.raises(TransientPersistenceError):
            recorder.record([make_trade(symbol="AAPL"), make_trade(symbol="MSFT")])

    assert count_trades(db) == 0
    assert get_positions(db, USER_A) == []


def test_positions_are_isolated_per_user(db, instrument_ids, make_trade):
    TradeRecorder(db).record([
        make_trade("buy", "10", "100", user_id=USER_A),
        make_trade("buy", "4", "50", user_id=USER_B),
    ])

    assert get_position(db, USER_A, instrument_ids["AAPL"]).quantity == Decimal("10")
    assert get_position(db, USER_B, instrument_ids["AAPL"]).average_cost == Decimal("50")


def test_redelivered_trades_with_idempotency_key_are_skipped(db, instrument_ids, make_trade):
    recorder = TradeRecorder(db)
    batch = [make_trade("buy", "10", "100", idempotency_key="order-1")]

    recorder.record(batch)
    summary = recorder.record(batch)

    assert summary.trade_count == 0
    assert summary.duplicates == ["order-1"]
    assert count_trades(db) == 1
    assert get_position(db, USER_A, instrument_ids["AAPL"]).quantity == Decimal("10")


def test_repeated_key_within_batch_applies_once(db, instrument_ids, make_trade):
    summary = TradeRecorder(db).record([
        make_trade("buy", "10", "100", idempotency_key="order-7"),
        make_trade("buy", "10", "100", idempotency_key="order-7"),
        make_trade("buy", "1", "100"),
    ])

    assert summary.trade_count == 2
    assert summary.duplicates == ["order-7"]
    assert get_position(db, USER_A, instrument_ids["AAPL"]).quantity == Decimal("11")


def test_trades_without_key_are_always_applied(db, instrument_ids, make_trade):
    recorder = TradeRecorder(db)
    recorder.record([make_trade("buy", "10", "100")])
    recorder.record([make_trade("buy", "10", "100")])

    assert get_position(db, USER_A, instrument_ids["AAPL"]).quantity == Decimal("20")


def test_empty_batch_is_data_error(db):
    with pytest.raises(DataError):
        TradeRecorder(db).record([])


def test_get_positions_lists_symbols(db, make_trade):
    TradeRecorder(db).record([make_trade(symbol="MSFT"), make_trade(symbol="AAPL", price="12.34")])

    rows = get_positions(db, USER_A)

    assert [r["symbol"] for r in rows] == ["AAPL", "MSFT"]
    assert rows[0]["average_cost"] == Decimal("12.34")
