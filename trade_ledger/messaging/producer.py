"""
Producer-side helpers for the trade-creation exchange.

The API write path and the AI-extraction worker publish in this exact wire
format; the CLI ``publish`` command and the test suite use these helpers.
"""
import uuid
from typing import Dict, Optional, Sequence

from trade_ledger.config.config import TradeQueueConfig
from trade_ledger.domain.models import TradeIntent
from trade_ledger.messaging.connection import BrokerConnectionManager
from trade_ledger.messaging.routing import BULK_CREATE_KEY, SINGLE_CREATE_KEY


def to_wire(intent: TradeIntent) -> Dict:
    """Render an intent as the camelCase JSON object consumers expect."""
    payload = {
        "stockSymbol": intent.symbol,
        "tradeType": intent.side.value,
        "quantity": int(intent.quantity),
        "price": str(intent.price),
        "tradeDate": intent.trade_date.isoformat(),
        "userId": intent.user_id,
    }
    if intent.idempotency_key:
        payload["idempotencyKey"] = intent.idempotency_key
    return payload


async def publish_trades(
    manager: BrokerConnectionManager,
    queue_config: TradeQueueConfig,
    intents: Sequence[TradeIntent],
    *,
    bulk: bool = True,
    message_id: Optional[str] = None,
) -> str:
    """
    Publish trades as one message and return its message id.

    ``bulk=False`` requires exactly one intent and uses ``trade.create.single``.
    """
    if not intents:
        raise ValueError("No trades to publish")

    if bulk:
        routing_key = BULK_CREATE_KEY
        body = [to_wire(i) for i in intents]
    else:
        if len(intents) != 1:
            raise ValueError(f"{SINGLE_CREATE_KEY} carries exactly one trade, got {len(intents)}")
        routing_key = SINGLE_CREATE_KEY
        body = to_wire(intents[0])

    message_id = message_id or str(uuid.uuid4())
    await manager.publish(queue_config.exchange, routing_key, body, message_id=message_id)
    return message_id
