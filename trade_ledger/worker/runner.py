"""
Worker process entry: wires config, database, broker and worker together and
runs until SIGINT/SIGTERM.
"""
import asyncio
import logging
import os
import signal

from trade_ledger.config.config import Config
from trade_ledger.ingest.recorder import TradeRecorder
from trade_ledger.messaging.connection import BrokerConnectionManager
from trade_ledger.monitoring.logger import get_logger
from trade_ledger.reconciliation.engine import OversellPolicy
from trade_ledger.storage.db import get_pool_status, init_db
from trade_ledger.worker.trade_worker import TradeWorker

logger = get_logger(__name__)

# Exit code when the in-flight transaction outlived the shutdown grace period
EXIT_FORCED = 3


async def run_worker(config: Config) -> None:
    """Run the trade worker until a shutdown signal arrives."""
    db = init_db(config.require_database_url())
    recorder = TradeRecorder(db, OversellPolicy(config.ledger.oversell_policy))
    broker = BrokerConnectionManager(config.broker)
    worker = TradeWorker(broker, recorder, config.trade_queue, config.worker)

    stop_event = asyncio.Event()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("SHUTDOWN_SIGNAL_RECEIVED", signal=sig.name)
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    logger.info(
        "WORKER_STARTING",
        queue=config.trade_queue.queue,
        oversell_policy=config.ledger.oversell_policy,
        environment=config.environment,
    )
    await worker.start()
    await stop_event.wait()

    clean = await worker.stop()
    if not clean:
        # The DB thread cannot be cancelled; exiting drops its connection, which
        # rolls the open transaction back. The unacked message is redelivered.
        logger.critical("WORKER_FORCED_EXIT", pool=get_pool_status(db))
        logging.shutdown()
        os._exit(EXIT_FORCED)

    db.dispose()
    logger.info("WORKER_EXITED")
