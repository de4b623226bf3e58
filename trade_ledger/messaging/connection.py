"""
Broker Connection Manager.

Owns one long-lived AMQP connection and a cache of channels keyed by
``ChannelRole``. Explicitly constructed and injected; there is no module-level
instance.

Lifecycle:
    init()      idempotent; no-op while connected or while a connect is in flight
    disconnect  connection + every cached channel dropped, reconnect scheduled after
                min(max_delay, base_delay * 2^retry_count); retry_count grows per
                attempt and resets on success
    reconnect   registered listeners run (topology + consumer re-registration)
    shutdown()  stops reconnecting, closes channels then the connection
"""
import asyncio
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection
from aio_pika.exceptions import AMQPError

from trade_ledger.config.config import BrokerConfig
from trade_ledger.exceptions import BrokerUnavailableError
from trade_ledger.monitoring.logger import get_logger

logger = get_logger(__name__)

ReconnectListener = Callable[[], Awaitable[None]]

_CONNECT_ERRORS = (AMQPError, ConnectionError, OSError, asyncio.TimeoutError)


class ChannelRole(str, Enum):
    """Logical purpose of a cached channel."""
    PUBLISHER = "publisher"
    TRADE_CONSUMER = "consumer-trade-queue"


def reconnect_delay(retry_count: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Capped exponential backoff: min(max_delay, base_delay * 2^retry_count)."""
    # Cap the exponent so huge retry counts cannot overflow
    return min(max_delay, base_delay * (2 ** min(retry_count, 32)))


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_json(message: Any) -> bytes:
    """Serialize a message body; Decimals become strings, dates ISO strings."""
    return json.dumps(message, default=_json_default).encode("utf-8")


class BrokerConnectionManager:
    """Single AMQP connection with per-role channel cache and capped-backoff reconnect."""

    def __init__(self, config: BrokerConfig):
        self._config = config
        self._connection: Optional[AbstractConnection] = None
        self._connecting = False
        self._closing = False
        self._recovery_pending = False
        self._retry_count = 0
        self._channels: Dict[ChannelRole, AbstractChannel] = {}
        self._channel_lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._recovery_task: Optional[asyncio.Task] = None
        self._reconnect_listeners: List[ReconnectListener] = []

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    @property
    def retry_count(self) -> int:
        return self._retry_count

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """Run ``listener`` after every connect that follows a lost or failed connection."""
        self._reconnect_listeners.append(listener)

    async def init(self) -> None:
        """Connect if not connected and no attempt is in flight."""
        if self.is_connected or self._connecting or self._closing:
            return

        self._connecting = True
        try:
            connection = await aio_pika.connect(
                self._config.url,
                timeout=self._config.connect_timeout_seconds,
            )
        except _CONNECT_ERRORS as e:
            self._connecting = False
            logger.error("BROKER_CONNECT_FAILED", error=str(e), retry_count=self._retry_count)
            self._schedule_reconnect()
            return

        self._connecting = False
        if self._closing:
            await connection.close()
            return

        self._connection = connection
        self._retry_count = 0
        # A direct connect may beat a sleeping backoff task; it must not bump the count later
        pending = self._reconnect_task
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            pending.cancel()
        self._reconnect_task = None
        connection.close_callbacks.add(self._on_connection_closed)

        recovered, self._recovery_pending = self._recovery_pending, False
        logger.info("BROKER_CONNECTED", recovered=recovered)

        if recovered:
            # Listeners may themselves request channels; run them outside this call
            self._recovery_task = asyncio.get_running_loop().create_task(self._notify_reconnected())

    async def get_or_create_channel(self, role: ChannelRole) -> AbstractChannel:
        """
        Return the cached channel for ``role``, opening one if absent.

        Raises:
            BrokerUnavailableError: no connection could be established
        """
        role = ChannelRole(role)
        if not self.is_connected:
            await self.init()

        async with self._channel_lock:
            channel = self._channels.get(role)
            if channel is not None and not channel.is_closed:
                return channel

            if not self.is_connected:
                raise BrokerUnavailableError("Could not establish broker connection")

            logger.info("CHANNEL_CREATE", role=role.value)
            try:
                channel = await self._connection.channel()
            except _CONNECT_ERRORS as e:
                raise BrokerUnavailableError(f"Could not open channel for {role.value}: {e}") from e

            def _evict(sender: Any, exc: Optional[BaseException] = None) -> None:
                if self._channels.get(role) is channel:
                    del self._channels[role]
                if exc is not None and not self._closing:
                    logger.warning("CHANNEL_CLOSED", role=role.value, error=str(exc))

            channel.close_callbacks.add(_evict)
            self._channels[role] = channel
            return channel

    async def publish(self, exchange: str, routing_key: str, message: Any, message_id: Optional[str] = None) -> None:
        """Publish ``message`` as persistent JSON to a durable topic exchange."""
        channel = await self.get_or_create_channel(ChannelRole.PUBLISHER)
        target = await channel.declare_exchange(exchange, aio_pika.ExchangeType.TOPIC, durable=True)
        await target.publish(
            aio_pika.Message(
                body=encode_json(message),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                message_id=message_id,
            ),
            routing_key=routing_key,
        )
        logger.debug("MESSAGE_PUBLISHED", exchange=exchange, routing_key=routing_key, message_id=message_id)

    async def shutdown(self) -> None:
        """Stop reconnecting and close every channel, then the connection."""
        self._closing = True

        for task in (self._reconnect_task, self._recovery_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._recovery_task = None

        async with self._channel_lock:
            channels = list(self._channels.items())
            self._channels.clear()
        for role, channel in channels:
            if channel.is_closed:
                continue
            try:
                await channel.close()
            except _CONNECT_ERRORS as e:
                logger.warning("CHANNEL_CLOSE_FAILED", role=role.value, error=str(e))

        connection, self._connection = self._connection, None
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except _CONNECT_ERRORS as e:
                logger.warning("BROKER_CLOSE_FAILED", error=str(e))
        logger.info("BROKER_SHUTDOWN")

    # ------------------------------------------------------------------
    # Reconnect handling
    # ------------------------------------------------------------------

    def _on_connection_closed(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if self._closing:
            return
        if sender is not self._connection:
            # Stale connection already replaced or dropped
            return
        logger.error("BROKER_CONNECTION_LOST", error=str(exc) if exc else None)
        self._handle_disconnect()

    def _handle_disconnect(self) -> None:
        self._connection = None
        self._channels.clear()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        self._recovery_pending = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        delay = reconnect_delay(
            self._retry_count,
            self._config.reconnect_base_delay_seconds,
            self._config.reconnect_max_delay_seconds,
        )
        logger.warning("BROKER_RECONNECT_SCHEDULED", delay_seconds=delay, retry_count=self._retry_count)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_count += 1
        # Clear before init() so a failed attempt can schedule the next one
        self._reconnect_task = None
        await self.init()

    async def _notify_reconnected(self) -> None:
        for listener in list(self._reconnect_listeners):
            try:
                await listener()
            except Exception as e:
                # Drop the connection so the next cycle retries the listener from scratch
                logger.error("RECONNECT_LISTENER_FAILED", listener=getattr(listener, "__name__", repr(listener)),
                             error=str(e), exc_info=True)
                await self._drop_connection()
                return

    async def _drop_connection(self) -> None:
        connection = self._connection
        self._handle_disconnect()
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except _CONNECT_ERRORS as e:
                logger.warning("BROKER_CLOSE_FAILED", error=str(e))
