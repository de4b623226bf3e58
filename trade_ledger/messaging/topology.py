"""
Trade pipeline topology.

    trade_exchange (topic, durable)
        └── trade.create.*  ──> trade_processing_queue (durable)
                                   │ x-dead-letter-exchange    = trade_dlx
                                   │ x-dead-letter-routing-key = trade_processing_queue
                                   ▼
    trade_dlx (direct, durable)
        └── trade_processing_queue ──> trade_dead_letter_queue (durable)

Every declaration is idempotent; the worker runs this on startup and again after
each broker reconnect, because a fresh channel has no memory of prior state.
Declaring a queue with different arguments than an existing one fails with
PRECONDITION_FAILED, so names and arguments here are part of the wire contract.
"""
from dataclasses import dataclass

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractQueue

from trade_ledger.config.config import TradeQueueConfig
from trade_ledger.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeclaredTopology:
    """Handles returned by ``declare_trade_topology``."""
    queue: AbstractQueue
    dead_letter_queue: AbstractQueue


def dead_letter_arguments(config: TradeQueueConfig) -> dict:
    """Queue arguments routing rejected messages to the dead-letter exchange."""
    return {
        "x-dead-letter-exchange": config.dead_letter_exchange,
        "x-dead-letter-routing-key": config.dead_letter_routing_key,
    }


async def declare_trade_topology(channel: AbstractChannel, config: TradeQueueConfig) -> DeclaredTopology:
    """
    Declare exchanges, queues, bindings and prefetch for the trade pipeline.

    Returns:
        The main queue (to consume from) and the dead-letter queue
    """
    dlx = await channel.declare_exchange(
        config.dead_letter_exchange, aio_pika.ExchangeType.DIRECT, durable=True
    )
    dlq = await channel.declare_queue(config.dead_letter_queue, durable=True)
    await dlq.bind(dlx, routing_key=config.dead_letter_routing_key)
    logger.info(
        "DEAD_LETTER_READY",
        exchange=config.dead_letter_exchange,
        queue=config.dead_letter_queue,
        routing_key=config.dead_letter_routing_key,
    )

    exchange = await channel.declare_exchange(
        config.exchange, aio_pika.ExchangeType.TOPIC, durable=True
    )
    queue = await channel.declare_queue(
        config.queue,
        durable=True,
        arguments=dead_letter_arguments(config),
    )
    await queue.bind(exchange, routing_key=config.routing_pattern)
    logger.info(
        "TRADE_QUEUE_READY",
        exchange=config.exchange,
        queue=config.queue,
        routing_pattern=config.routing_pattern,
    )

    await channel.set_qos(prefetch_count=config.prefetch_count)
    return DeclaredTopology(queue=queue, dead_letter_queue=dlq)
