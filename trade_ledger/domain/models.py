"""
Domain models for the trade ledger.

These are the core business objects passed between the message decoder, the
reconciliation engine and the storage layer. Money and quantities are always
Decimal; timestamps are UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from trade_ledger.exceptions import InvariantError


class TradeSide(str, Enum):
    """Trade side."""
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class TradeIntent:
    """
    A decoded request to record one trade.

    The instrument is still the producer's external symbol; it is resolved to an
    internal instrument id before anything is persisted.
    """
    user_id: str
    symbol: str
    side: TradeSide
    quantity: Decimal
    price: Decimal
    trade_date: date
    idempotency_key: Optional[str] = None

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError(f"Trade quantity must be positive, got {self.quantity}")
        if self.price <= 0:
            raise ValueError(f"Trade price must be positive, got {self.price}")


@dataclass(frozen=True)
class Position:
    """A user's aggregated holding of one instrument."""
    user_id: str
    instrument_id: int
    quantity: Decimal
    average_cost: Decimal
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.quantity < 0:
            raise InvariantError(
                f"Position quantity went negative for user={self.user_id} "
                f"instrument={self.instrument_id}: {self.quantity}"
            )


@dataclass(frozen=True)
class RecordedTrade:
    """A trade row as persisted, with its resolved instrument id."""
    trade_id: int
    instrument_id: int
    intent: TradeIntent
    created_at: datetime
