"""
Worker process entry: signal-driven shutdown and forced exit past the grace period.
"""
import asyncio
import os
import signal
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from trade_ledger.config.config import Config, DataConfig
from trade_ledger.worker.runner import EXIT_FORCED, run_worker

from conftest import wait_until


@pytest.fixture
def config() -> Config:
    return Config(data=DataConfig(database_url="sqlite://"))


def _fake_worker(clean: bool) -> MagicMock:
    worker = MagicMock()
    worker.start = AsyncMock()
    worker.stop = AsyncMock(return_value=clean)
    return worker


async def _run_until_sigterm(config: Config, worker: MagicMock):
    with patch("trade_ledger.worker.runner.init_db") as init_db, \
            patch("trade_ledger.worker.runner.TradeWorker", return_value=worker), \
            patch("trade_ledger.worker.runner.BrokerConnectionManager"), \
            patch("trade_ledger.worker.runner.logging.shutdown"), \
            patch("trade_ledger.worker.runner.os._exit") as exit_mock:
        task = asyncio.create_task(run_worker(config))
        await wait_until(lambda: worker.start.await_count == 1)

        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(task, timeout=2)
    return init_db.return_value, exit_mock


@pytest.mark.asyncio
async def test_sigterm_stops_worker_and_disposes_database(config):
    worker = _fake_worker(clean=True)

    db, exit_mock = await _run_until_sigterm(config, worker)

    worker.stop.assert_awaited_once()
    db.dispose.assert_called_once()
    exit_mock.assert_not_called()


@pytest.mark.asyncio
async def test_unclean_stop_forces_exit(config):
    worker = _fake_worker(clean=False)

    _, exit_mock = await _run_until_sigterm(config, worker)

    exit_mock.assert_called_once_with(EXIT_FORCED)
