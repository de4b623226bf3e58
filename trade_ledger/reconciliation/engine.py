"""
Position reconciliation engine.

Pure accounting: given the current position for a (user, instrument) pair, or
None, and one trade, compute the position that must be written back.

    BUY,  no position   -> open:   qty = q, avg = p
    SELL, no position   -> no-op (clamp) / OversellError (reject)
    BUY,  position      -> add:    qty = old + q, avg = (old*avg + q*p) / (old + q)
    SELL, position      -> reduce: qty = max(0, old - q), avg unchanged
                           (reject policy raises instead of flooring at zero)

Everything is Decimal. Average cost is quantized to COST_QUANT (ROUND_HALF_EVEN),
matching the storage column scale so that what is computed is what is stored.
No I/O happens here; callers hold the position row lock.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_EVEN, localcontext
from enum import Enum
from typing import Optional

from trade_ledger.domain.models import Position, TradeIntent, TradeSide
from trade_ledger.exceptions import InvariantError, OversellError

# Matches Numeric(20, 8) on positions.average_cost
COST_QUANT = Decimal("0.00000001")
_PRECISION = 38


class OversellPolicy(str, Enum):
    """What to do with a sell that exceeds (or has no) holdings."""
    CLAMP = "clamp"
    REJECT = "reject"


class ReconcileAction(str, Enum):
    """What a trade did to the position."""
    OPENED = "opened"
    INCREASED = "increased"
    REDUCED = "reduced"
    FLATTENED = "flattened"   # quantity reached exactly zero
    CLAMPED = "clamped"       # oversell floored at zero
    IGNORED = "ignored"       # sell with no position


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of applying one trade; ``position`` is None only for IGNORED."""
    action: ReconcileAction
    position: Optional[Position]
    previous: Optional[Position] = None

    @property
    def changed(self) -> bool:
        return self.position is not None


def apply_trade(
    existing: Optional[Position],
    trade: TradeIntent,
    instrument_id: int,
    policy: OversellPolicy = OversellPolicy.CLAMP,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """
    Apply one trade to a position.

    Args:
        existing: Current position row for (trade.user_id, instrument_id), or None
        trade: The trade being recorded
        instrument_id: Resolved internal instrument id
        policy: Oversell policy
        now: Timestamp for ``updated_at`` (defaults to current UTC time)

    Returns:
        ReconcileResult with the position to persist

    Raises:
        OversellError: reject policy and the sell exceeds holdings
        InvariantError: existing position belongs to a different user/instrument
    """
    policy = OversellPolicy(policy)
    now = now or datetime.now(timezone.utc)

    if existing is not None and (
        existing.user_id != trade.user_id or existing.instrument_id != instrument_id
    ):
        raise InvariantError(
            f"Position ({existing.user_id}, {existing.instrument_id}) does not match "
            f"trade ({trade.user_id}, {instrument_id})"
        )

    if existing is None:
        if trade.side == TradeSide.SELL:
            if policy == OversellPolicy.REJECT:
                raise OversellError(
                    f"Sell of {trade.quantity} {trade.symbol} for user {trade.user_id} "
                    f"with no open position"
                )
            return ReconcileResult(ReconcileAction.IGNORED, None)

        opened = Position(
            user_id=trade.user_id,
            instrument_id=instrument_id,
            quantity=trade.quantity,
            average_cost=_quantize_cost(trade.price),
            updated_at=now,
        )
        return ReconcileResult(ReconcileAction.OPENED, opened)

    if trade.side == TradeSide.BUY:
        return ReconcileResult(
            ReconcileAction.INCREASED,
            _buy(existing, trade, now),
            previous=existing,
        )
    return _sell(existing, trade, policy, now)


def reconcile(
    existing: Optional[Position],
    trade: TradeIntent,
    instrument_id: int,
    policy: OversellPolicy = OversellPolicy.CLAMP,
) -> Optional[Position]:
    """Return the new position for ``trade``, or None when nothing is held or created."""
    return apply_trade(existing, trade, instrument_id, policy).position


def weighted_average_cost(
    old_quantity: Decimal,
    old_average: Decimal,
    add_quantity: Decimal,
    add_price: Decimal,
) -> Decimal:
    """Quantity-weighted average of the held cost and the new buy."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        total_quantity = old_quantity + add_quantity
        if total_quantity <= 0:
            raise InvariantError(f"Cannot average over non-positive quantity {total_quantity}")
        total_cost = old_quantity * old_average + add_quantity * add_price
        return _quantize_cost(total_cost / total_quantity)


def _buy(existing: Position, trade: TradeIntent, now: datetime) -> Position:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        new_quantity = existing.quantity + trade.quantity
    return Position(
        user_id=existing.user_id,
        instrument_id=existing.instrument_id,
        quantity=new_quantity,
        average_cost=weighted_average_cost(
            existing.quantity, existing.average_cost, trade.quantity, trade.price
        ),
        updated_at=now,
    )


def _sell(
    existing: Position,
    trade: TradeIntent,
    policy: OversellPolicy,
    now: datetime,
) -> ReconcileResult:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        remaining = existing.quantity - trade.quantity

    if remaining < 0:
        if policy == OversellPolicy.REJECT:
            raise OversellError(
                f"Sell of {trade.quantity} {trade.symbol} exceeds held quantity "
                f"{existing.quantity} for user {trade.user_id}"
            )
        action = ReconcileAction.CLAMPED
        remaining = Decimal("0")
    elif remaining == 0:
        action = ReconcileAction.FLATTENED
    else:
        action = ReconcileAction.REDUCED

    # Average cost is a buy-side quantity only
    reduced = Position(
        user_id=existing.user_id,
        instrument_id=existing.instrument_id,
        quantity=remaining,
        average_cost=existing.average_cost,
        updated_at=now,
    )
    return ReconcileResult(action, reduced, previous=existing)


def _quantize_cost(value: Decimal) -> Decimal:
    return value.quantize(COST_QUANT, rounding=ROUND_HALF_EVEN)
