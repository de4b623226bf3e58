"""
Trade Processing Worker.

Per message:

    received -> decoded -> instruments resolved -> persisted -> reconciled
             -> committed -> acked
    any failure -> rolled back -> nack(requeue=False) -> dead-letter queue

Unknown routing keys are acked and dropped with a warning. Messages are handled
strictly one at a time (prefetch plus a processing lock), so two trades for the
same (user, instrument) apply in delivery order. The ack is only sent after the
database commit; a crash between the two leads to redelivery, which trades with
an idempotency key survive without double-applying.
"""
import asyncio
from typing import Any, Optional

import structlog
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from trade_ledger.config.config import TradeQueueConfig, WorkerConfig
from trade_ledger.exceptions import (
    BrokerUnavailableError,
    DataError,
    InvariantError,
    OperationalError,
    TransientPersistenceError,
)
from trade_ledger.ingest.recorder import RecordSummary, TradeRecorder
from trade_ledger.messaging.connection import BrokerConnectionManager, ChannelRole
from trade_ledger.messaging.routing import UnknownRoute, decode_route, decode_trades
from trade_ledger.messaging.topology import declare_trade_topology
from trade_ledger.monitoring.logger import get_logger
from trade_ledger.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

_BROKER_IO_ERRORS = (AMQPError, ChannelInvalidStateError, ConnectionError, asyncio.TimeoutError)


class TradeWorker:
    """Consumes trade-creation messages and applies them to the ledger."""

    def __init__(
        self,
        broker: BrokerConnectionManager,
        recorder: TradeRecorder,
        queue_config: TradeQueueConfig,
        worker_config: WorkerConfig,
    ):
        self._broker = broker
        self._recorder = recorder
        self._queue_config = queue_config
        self._worker_config = worker_config

        self._queue: Optional[AbstractQueue] = None
        self._channel: Optional[AbstractChannel] = None
        self._consumer_tag: Optional[str] = None
        self._stopping = False
        self._processing = asyncio.Lock()
        self._subscribe_lock = asyncio.Lock()

        self.processed = 0
        self.dead_lettered = 0
        self.dropped = 0

        self._record = retry_on_transient_errors(
            max_retries=worker_config.transient_retries,
            base_delay=worker_config.retry_base_delay_seconds,
            max_backoff=worker_config.retry_max_delay_seconds,
            transient_errors=(TransientPersistenceError,),
        )(self._record_in_thread)

        broker.add_reconnect_listener(self.resubscribe)

    @property
    def is_consuming(self) -> bool:
        return self._consumer_tag is not None

    async def start(self) -> None:
        """
        Connect, declare topology and start consuming.

        When the broker is unreachable this returns without consuming; the
        connection manager's recovery hook subscribes once it reconnects.
        """
        await self._broker.init()
        try:
            await self._subscribe()
        except BrokerUnavailableError as e:
            logger.warning("WORKER_WAITING_FOR_BROKER", error=str(e))

    async def resubscribe(self) -> None:
        """Re-declare topology and re-register the consumer on a fresh channel."""
        if self._stopping:
            return
        logger.info("WORKER_RESUBSCRIBE")
        await self._subscribe()

    async def _subscribe(self) -> None:
        async with self._subscribe_lock:
            if self._consumer_tag is not None and self._channel is not None and not self._channel.is_closed:
                return
            # Handles from a dead channel are useless after a reconnect
            self._consumer_tag = None
            channel = await self._broker.get_or_create_channel(ChannelRole.TRADE_CONSUMER)
            topology = await declare_trade_topology(channel, self._queue_config)

            self._channel = channel
            self._queue = topology.queue
            channel.close_callbacks.add(self._on_channel_closed)
            self._consumer_tag = await topology.queue.consume(self.handle_message, no_ack=False)
            logger.info("CONSUMER_READY", queue=self._queue_config.queue, consumer_tag=self._consumer_tag)

    def _on_channel_closed(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if sender is not self._channel:
            return
        self._consumer_tag = None
        if self._stopping:
            return
        logger.warning("CONSUMER_CHANNEL_CLOSED", error=str(exc) if exc else None)
        # Connection-level loss is handled by the reconnect listener
        if self._broker.is_connected:
            asyncio.get_running_loop().create_task(self._resubscribe_after_channel_loss())

    async def _resubscribe_after_channel_loss(self) -> None:
        try:
            await self.resubscribe()
        except (BrokerUnavailableError, *_BROKER_IO_ERRORS) as e:
            logger.error("WORKER_RESUBSCRIBE_FAILED", error=str(e))

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_message(self, message: AbstractIncomingMessage) -> None:
        """Consumer callback: process one delivery to ack or dead-letter."""
        async with self._processing:
            if self._stopping:
                # Delivered before the consumer was cancelled; hand it back untouched
                await self._settle(message.nack(requeue=True), "NACK_REQUEUE_FAILED")
                return

            structlog.contextvars.bind_contextvars(
                routing_key=message.routing_key,
                message_id=message.message_id,
                delivery_tag=message.delivery_tag,
            )
            try:
                await self._process(message)
            finally:
                structlog.contextvars.unbind_contextvars("routing_key", "message_id", "delivery_tag")

    async def _process(self, message: AbstractIncomingMessage) -> None:
        command = decode_route(message.routing_key)
        logger.info("TRADE_MESSAGE_RECEIVED", command=type(command).__name__)

        if isinstance(command, UnknownRoute):
            logger.warning("UNKNOWN_ROUTING_KEY_DROPPED")
            self.dropped += 1
            await self._settle(message.ack(), "ACK_FAILED")
            return

        try:
            intents = decode_trades(command, message.body)
            summary = await self._record(intents)
        except Exception as e:
            await self._dead_letter(message, e)
            return

        # Commit happened inside the recorder; only now is the ack safe
        if await self._settle(message.ack(), "ACK_FAILED_AFTER_COMMIT"):
            self.processed += 1
            self._log_processed(summary)

    async def _record_in_thread(self, intents) -> RecordSummary:
        return await asyncio.to_thread(self._recorder.record, intents)

    async def _dead_letter(self, message: AbstractIncomingMessage, error: Exception) -> None:
        if isinstance(error, InvariantError):
            logger.critical("TRADE_MESSAGE_DEAD_LETTERED", error_kind="invariant", error=str(error), exc_info=True)
        elif isinstance(error, DataError):
            logger.error("TRADE_MESSAGE_DEAD_LETTERED", error_kind="data",
                         error_type=type(error).__name__, error=str(error))
        elif isinstance(error, OperationalError):
            logger.error("TRADE_MESSAGE_DEAD_LETTERED", error_kind="persistence", error=str(error), exc_info=True)
        else:
            logger.error("TRADE_MESSAGE_DEAD_LETTERED", error_kind="unexpected", error=str(error), exc_info=True)

        if await self._settle(message.nack(requeue=False), "NACK_FAILED"):
            self.dead_lettered += 1

    async def _settle(self, operation, failure_event: str) -> bool:
        """Await an ack/nack; a dead channel means the broker will redeliver."""
        try:
            await operation
            return True
        except _BROKER_IO_ERRORS as e:
            logger.error(failure_event, error=str(e))
            return False

    def _log_processed(self, summary: RecordSummary) -> None:
        logger.info(
            "TRADE_MESSAGE_PROCESSED",
            trades=summary.trade_count,
            duplicates=len(summary.duplicates),
            actions=[a.value for a in summary.actions],
            users=sorted({t.intent.user_id for t in summary.recorded}),
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self, grace_seconds: Optional[float] = None) -> bool:
        """
        Stop consuming, wait for the in-flight message, then close the broker.

        Returns:
            False if the in-flight message did not finish within the grace period
        """
        self._stopping = True
        grace = grace_seconds if grace_seconds is not None else self._worker_config.shutdown_grace_seconds

        if self._queue is not None and self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
                logger.info("CONSUMER_CANCELLED", consumer_tag=self._consumer_tag)
            except _BROKER_IO_ERRORS as e:
                logger.warning("CONSUMER_CANCEL_FAILED", error=str(e))
        self._consumer_tag = None

        finished = True
        try:
            await asyncio.wait_for(self._drain(), timeout=grace)
        except asyncio.TimeoutError:
            finished = False
            logger.error("SHUTDOWN_GRACE_EXCEEDED", grace_seconds=grace)

        await self._broker.shutdown()
        logger.info(
            "WORKER_STOPPED",
            clean=finished,
            processed=self.processed,
            dead_lettered=self.dead_lettered,
            dropped=self.dropped,
        )
        return finished

    async def _drain(self) -> None:
        async with self._processing:
            pass
