"""
Messaging module.

AMQP transport for the trade-creation pipeline.

ARCHITECTURE:
    BrokerConnectionManager (one connection, channel cache per ChannelRole)
        │
        ├── declare_trade_topology (exchanges, queues, dead-letter routing, prefetch)
        │
        ├── decode_route / decode_trades (routing key -> command, body -> intents)
        │
        └── publish_trades (producer side of the same wire format)
"""
from trade_ledger.messaging.connection import BrokerConnectionManager, ChannelRole
from trade_ledger.messaging.producer import publish_trades
from trade_ledger.messaging.routing import (
    BulkCreate,
    SingleCreate,
    TradeCommand,
    UnknownRoute,
    decode_route,
    decode_trades,
)
from trade_ledger.messaging.topology import DeclaredTopology, declare_trade_topology

__all__ = [
    "BrokerConnectionManager",
    "ChannelRole",
    "publish_trades",
    "BulkCreate",
    "SingleCreate",
    "TradeCommand",
    "UnknownRoute",
    "decode_route",
    "decode_trades",
    "DeclaredTopology",
    "declare_trade_topology",
]
