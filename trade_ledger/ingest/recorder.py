"""
Trade Recorder: persists a batch of trade intents and reconciles positions.

One call is one unit of work for one queue message:

    resolve symbols (single lookup, all-or-nothing)
        -> BEGIN
        -> insert every trade row
        -> per trade: SELECT position FOR UPDATE, reconcile, write back
        -> COMMIT

Any exception rolls the whole transaction back, so a failed message leaves no
trade rows and no position changes behind.

Idempotency: trades carrying an ``idempotency_key`` that is already recorded
(or repeated earlier in the same batch) are skipped without reconciliation, so
redelivery after a crash between commit and ack does not double-apply them.
Trades without a key are always applied.

Synchronous by design; the async worker runs it via ``asyncio.to_thread``.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError as SAOperationalError

from trade_ledger.domain.models import RecordedTrade, TradeIntent
from trade_ledger.exceptions import (
    DataError,
    TransientPersistenceError,
    UnresolvedInstrumentError,
)
from trade_ledger.monitoring.logger import get_logger
from trade_ledger.reconciliation.engine import (
    OversellPolicy,
    ReconcileAction,
    apply_trade,
)
from trade_ledger.storage.db import Database
from trade_ledger.storage.repository import (
    find_recorded_idempotency_keys,
    get_position_for_update,
    insert_trade,
    resolve_instruments,
    save_position,
)

logger = get_logger(__name__)


@dataclass
class RecordSummary:
    """What one unit of work did."""
    recorded: List[RecordedTrade] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    actions: List[ReconcileAction] = field(default_factory=list)

    @property
    def trade_count(self) -> int:
        return len(self.recorded)


class TradeRecorder:
    """Applies decoded trade intents to the ledger atomically."""

    def __init__(self, db: Database, oversell_policy: OversellPolicy = OversellPolicy.CLAMP):
        self._db = db
        self._policy = OversellPolicy(oversell_policy)

    def record(self, intents: Sequence[TradeIntent]) -> RecordSummary:
        """
        Persist ``intents`` and their position effects in one transaction.

        Raises:
            UnresolvedInstrumentError: any symbol has no instrument row
            TransientPersistenceError: connectivity loss / deadlock (safe to retry)
            DataError: integrity violation or reconciliation rejection
        """
        if not intents:
            raise DataError("Trade message contained no trades")

        try:
            instrument_ids = self._resolve(intents)
            return self._apply(intents, instrument_ids)
        except IntegrityError as e:
            raise DataError(f"Integrity violation while recording trades: {e.orig}") from e
        except SAOperationalError as e:
            raise TransientPersistenceError(f"Database operational error: {e.orig}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientPersistenceError(f"Database connection lost: {e.orig}") from e
            raise

    def _resolve(self, intents: Sequence[TradeIntent]) -> Dict[str, int]:
        symbols = {intent.symbol for intent in intents}
        with self._db.get_session() as session:
            instrument_ids = resolve_instruments(session, symbols)

        missing = symbols - instrument_ids.keys()
        if missing:
            raise UnresolvedInstrumentError(missing)
        return instrument_ids

    def _apply(self, intents: Sequence[TradeIntent], instrument_ids: Dict[str, int]) -> RecordSummary:
        summary = RecordSummary()

        with self._db.get_session() as session:
            seen = find_recorded_idempotency_keys(
                session, (i.idempotency_key for i in intents)
            )

            for intent in intents:
                key = intent.idempotency_key
                if key and key in seen:
                    summary.duplicates.append(key)
                    continue
                if key:
                    seen.add(key)
                summary.recorded.append(
                    insert_trade(session, intent, instrument_ids[intent.symbol])
                )

            for trade in summary.recorded:
                existing = get_position_for_update(
                    session, trade.intent.user_id, trade.instrument_id
                )
                result = apply_trade(existing, trade.intent, trade.instrument_id, self._policy)
                summary.actions.append(result.action)

                if result.changed:
                    save_position(session, result.position)

                logger.debug(
                    "POSITION_RECONCILED",
                    trade_id=trade.trade_id,
                    user_id=trade.intent.user_id,
                    symbol=trade.intent.symbol,
                    side=trade.intent.side.value,
                    action=result.action.value,
                    previous_quantity=str(result.previous.quantity) if result.previous else None,
                    quantity=str(result.position.quantity) if result.position else None,
                    average_cost=str(result.position.average_cost) if result.position else None,
                )

        if summary.duplicates:
            logger.warning(
                "DUPLICATE_TRADES_SKIPPED",
                idempotency_keys=summary.duplicates,
                recorded=summary.trade_count,
            )
        return summary
