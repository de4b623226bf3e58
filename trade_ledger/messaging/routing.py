"""
Trade message decoding.

Routing keys are decoded once, at the consumer boundary, into a closed set of
commands:

    trade.create.single -> SingleCreate  (body: one trade object)
    trade.create.bulk   -> BulkCreate    (body: non-empty array of trade objects)
    anything else       -> UnknownRoute  (acked and dropped by the worker)

Bodies are parsed with ``parse_float=Decimal`` so prices never pass through
binary floating point.
"""
import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from trade_ledger.domain.models import TradeIntent, TradeSide
from trade_ledger.exceptions import MessageDecodeError, ValidationError

SINGLE_CREATE_KEY = "trade.create.single"
BULK_CREATE_KEY = "trade.create.bulk"


@dataclass(frozen=True)
class SingleCreate:
    routing_key: str = SINGLE_CREATE_KEY


@dataclass(frozen=True)
class BulkCreate:
    routing_key: str = BULK_CREATE_KEY


@dataclass(frozen=True)
class UnknownRoute:
    routing_key: str


TradeCommand = Union[SingleCreate, BulkCreate, UnknownRoute]


def decode_route(routing_key: Optional[str]) -> TradeCommand:
    """Map a routing key to its command variant."""
    if routing_key == SINGLE_CREATE_KEY:
        return SingleCreate()
    if routing_key == BULK_CREATE_KEY:
        return BulkCreate()
    return UnknownRoute(routing_key or "")


class TradePayload(BaseModel):
    """Wire format of one trade, as published by the API and AI-extraction producers."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    stock_symbol: str = Field(alias="stockSymbol", min_length=1, max_length=16)
    trade_type: TradeSide = Field(alias="tradeType")
    # Strict: JSON true and "10" are not share counts
    quantity: int = Field(gt=0, strict=True)
    price: Decimal = Field(gt=0, decimal_places=2)
    trade_date: date = Field(alias="tradeDate")
    user_id: str = Field(alias="userId", min_length=1, max_length=36)
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey", min_length=1, max_length=128)

    @field_validator("trade_date", mode="before")
    @classmethod
    def _date_from_iso_datetime(cls, value: Any) -> Any:
        # JS producers serialize Date objects as full ISO timestamps
        if isinstance(value, str) and "T" in value:
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
            except ValueError:
                return value
        return value

    def to_intent(self) -> TradeIntent:
        return TradeIntent(
            user_id=self.user_id,
            symbol=self.stock_symbol.upper(),
            side=self.trade_type,
            quantity=Decimal(self.quantity),
            price=self.price,
            trade_date=self.trade_date,
            idempotency_key=self.idempotency_key,
        )


def parse_body(body: bytes) -> Any:
    """Parse a JSON message body, keeping every non-integer number as Decimal."""
    try:
        return json.loads(body, parse_float=Decimal)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MessageDecodeError(f"Message body is not valid JSON: {e}") from e


def decode_trades(command: TradeCommand, body: bytes) -> List[TradeIntent]:
    """
    Normalize a message body into a list of trade intents.

    Raises:
        MessageDecodeError: body shape does not match the command
        ValidationError: a trade object fails field validation
    """
    if isinstance(command, UnknownRoute):
        raise MessageDecodeError(f"No trade decoder for routing key {command.routing_key!r}")

    content = parse_body(body)

    if isinstance(command, SingleCreate):
        if not isinstance(content, dict):
            raise MessageDecodeError(
                f"{SINGLE_CREATE_KEY} expects a JSON object, got {type(content).__name__}"
            )
        items = [content]
    else:
        if not isinstance(content, list):
            raise MessageDecodeError(
                f"{BULK_CREATE_KEY} expects a JSON array, got {type(content).__name__}"
            )
        if not content:
            raise MessageDecodeError(f"{BULK_CREATE_KEY} array must contain at least one trade")
        items = content

    intents = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise MessageDecodeError(f"Trade #{index} is not a JSON object")
        try:
            intents.append(TradePayload.model_validate(item).to_intent())
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'trade'}: {err['msg']}"
                for err in e.errors()
            )
            raise ValidationError(f"Trade #{index} invalid: {problems}") from e
    return intents
