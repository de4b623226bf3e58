"""
Persistence functions for instruments, trades and positions.

Functions taking a ``Session`` participate in the caller's unit of work and never
commit; the caller's ``Database.get_session()`` block owns the transaction.
Functions taking a ``Database`` open their own short session.
"""
from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    TypeDecorator,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

from trade_ledger.domain.models import Position, RecordedTrade, TradeIntent
from trade_ledger.storage.db import Base, Database


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# SQLite only autoincrements INTEGER PRIMARY KEY
_TradeId = BigInteger().with_variant(Integer, "sqlite")


class _DecimalText(TypeDecorator):
    """Decimal kept as its exact text; SQLite would store NUMERIC as a binary float."""
    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


def _decimal(scale: int):
    return Numeric(precision=20, scale=scale).with_variant(_DecimalText(), "sqlite")


# ORM Models
class InstrumentModel(Base):
    """ORM model for tradable instruments, looked up by external symbol."""
    __tablename__ = "instruments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(16), nullable=False, unique=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class TradeModel(Base):
    """ORM model for recorded trades (immutable once written)."""
    __tablename__ = "trades"
    __table_args__ = (
        Index("idx_trade_user", "user_id"),
        Index("idx_trade_instrument", "instrument_id"),
        Index("idx_trade_date", "trade_date"),
    )

    id = Column(_TradeId, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False)
    instrument_id = Column(Integer, ForeignKey("instruments.id"), nullable=False)
    side = Column(String(4), nullable=False)
    quantity = Column(_decimal(8), nullable=False)
    price = Column(_decimal(2), nullable=False)
    trade_date = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    # Producer-supplied dedup key; NULL for producers that do not send one
    idempotency_key = Column(String(128), nullable=True, unique=True)


class PositionModel(Base):
    """ORM model for per-(user, instrument) holdings."""
    __tablename__ = "positions"
    __table_args__ = (
        UniqueConstraint("user_id", "instrument_id", name="uq_position_user_instrument"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False)
    instrument_id = Column(Integer, ForeignKey("instruments.id"), nullable=False)
    quantity = Column(_decimal(8), nullable=False)
    average_cost = Column(_decimal(8), nullable=False, default=Decimal("0"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


def _to_position(model: PositionModel) -> Position:
    updated_at = model.updated_at
    if updated_at is not None and updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return Position(
        user_id=model.user_id,
        instrument_id=model.instrument_id,
        quantity=Decimal(model.quantity),
        average_cost=Decimal(model.average_cost),
        updated_at=updated_at,
    )


# Unit-of-work functions (caller owns the transaction)
def resolve_instruments(session: Session, symbols: Iterable[str]) -> Dict[str, int]:
    """
    Map external symbols to instrument ids in one query.

    Symbols with no instrument row are absent from the result.
    """
    wanted = sorted(set(symbols))
    if not wanted:
        return {}
    rows = session.execute(
        select(InstrumentModel.symbol, InstrumentModel.id).where(InstrumentModel.symbol.in_(wanted))
    ).all()
    return {symbol: instrument_id for symbol, instrument_id in rows}


def find_recorded_idempotency_keys(session: Session, keys: Iterable[str]) -> Set[str]:
    """Return the subset of ``keys`` already present on recorded trades."""
    wanted = sorted({k for k in keys if k})
    if not wanted:
        return set()
    rows = session.execute(
        select(TradeModel.idempotency_key).where(TradeModel.idempotency_key.in_(wanted))
    ).scalars()
    return set(rows)


def insert_trade(session: Session, intent: TradeIntent, instrument_id: int) -> RecordedTrade:
    """Insert one trade row and flush to obtain its id."""
    model = TradeModel(
        user_id=intent.user_id,
        instrument_id=instrument_id,
        side=intent.side.value,
        quantity=intent.quantity,
        price=intent.price,
        trade_date=intent.trade_date,
        created_at=_utcnow(),
        idempotency_key=intent.idempotency_key,
    )
    session.add(model)
    session.flush()
    return RecordedTrade(
        trade_id=model.id,
        instrument_id=instrument_id,
        intent=intent,
        created_at=model.created_at,
    )


def get_position_for_update(session: Session, user_id: str, instrument_id: int) -> Optional[Position]:
    """
    Select the position row for (user, instrument) with a row lock.

    The lock is held until the caller's transaction ends.
    """
    model = _select_position_model(session, user_id, instrument_id, for_update=True)
    return _to_position(model) if model is not None else None


def save_position(session: Session, position: Position) -> None:
    """Insert or update the position row for (user, instrument)."""
    model = _select_position_model(session, position.user_id, position.instrument_id, for_update=True)

    if model is not None:
        model.quantity = position.quantity
        model.average_cost = position.average_cost
        model.updated_at = position.updated_at
    else:
        model = PositionModel(
            user_id=position.user_id,
            instrument_id=position.instrument_id,
            quantity=position.quantity,
            average_cost=position.average_cost,
            created_at=position.updated_at,
            updated_at=position.updated_at,
        )
        session.add(model)
    # Later trades in the same batch must see this row (autoflush is off)
    session.flush()


def _select_position_model(
    session: Session,
    user_id: str,
    instrument_id: int,
    for_update: bool = False,
) -> Optional[PositionModel]:
    stmt = select(PositionModel).where(
        PositionModel.user_id == user_id,
        PositionModel.instrument_id == instrument_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalar_one_or_none()


# Repository Functions (own session)
def upsert_instrument(db: Database, symbol: str, name: str) -> int:
    """Create or rename an instrument; returns its id."""
    with db.get_session() as session:
        model = session.execute(
            select(InstrumentModel).where(InstrumentModel.symbol == symbol)
        ).scalar_one_or_none()
        if model is None:
            model = InstrumentModel(symbol=symbol, name=name)
            session.add(model)
        else:
            model.name = name
        session.flush()
        return model.id


def get_positions(db: Database, user_id: str) -> List[Dict]:
    """All positions for a user, with instrument symbols, ordered by symbol."""
    with db.get_session() as session:
        rows = session.execute(
            select(PositionModel, InstrumentModel.symbol)
            .join(InstrumentModel, InstrumentModel.id == PositionModel.instrument_id)
            .where(PositionModel.user_id == user_id)
            .order_by(InstrumentModel.symbol)
        ).all()
        return [
            {
                "symbol": symbol,
                "quantity": Decimal(model.quantity),
                "average_cost": Decimal(model.average_cost),
                "updated_at": model.updated_at,
            }
            for model, symbol in rows
        ]


def get_position(db: Database, user_id: str, instrument_id: int) -> Optional[Position]:
    """Read a single position without locking."""
    with db.get_session() as session:
        model = _select_position_model(session, user_id, instrument_id)
        return _to_position(model) if model is not None else None


def count_trades(db: Database, user_id: Optional[str] = None) -> int:
    """Number of recorded trades, optionally for one user."""
    with db.get_session() as session:
        stmt = select(func.count(TradeModel.id))
        if user_id is not None:
            stmt = stmt.where(TradeModel.user_id == user_id)
        return session.execute(stmt).scalar_one()
