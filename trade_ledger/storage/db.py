"""
Database engine and session management.

PostgreSQL in production. SQLite is accepted for local runs and the test suite
(single shared connection, no pool sizing).
Includes connection-pool observability via SQLAlchemy pool events.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import Pool, StaticPool
from contextlib import contextmanager
from typing import Generator, Dict, Any
from urllib.parse import urlparse
import time

from trade_ledger.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: PostgreSQL (or SQLite) connection string
        """
        if not database_url.startswith(("postgresql", "sqlite")):
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// connection string."
            )

        self.database_url = database_url

        if database_url.startswith("sqlite"):
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=5,
                max_overflow=5,
                pool_recycle=3600,
                pool_timeout=30,
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        _register_pool_events(self.engine.pool)

    def create_all(self):
        """Create all tables."""
        # Registers the ORM models on Base.metadata
        import trade_ledger.storage.repository  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        """Close all pooled connections."""
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for a unit of work.

        Commits when the block exits normally, rolls back on any exception
        and re-raises it.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def init_db(database_url: str, create_tables: bool = True) -> Database:
    """
    Build a Database for ``database_url`` and optionally create missing tables.

    Args:
        database_url: Connection string
        create_tables: Run CREATE TABLE IF NOT EXISTS for all ledger tables

    Returns:
        Database instance
    """
    try:
        parsed = urlparse(database_url)
        logger.info(
            "DATABASE_CONNECTION_INIT",
            scheme=parsed.scheme,
            host=parsed.hostname,
            port=parsed.port,
            database=parsed.path.lstrip("/") or None,
            user=parsed.username,
            has_password=bool(parsed.password),
        )
    except ValueError as e:
        logger.warning("Failed to parse DATABASE_URL for logging", error=str(e))

    db = Database(database_url)
    if create_tables:
        db.create_all()
    return db


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

def _register_pool_events(pool: Pool) -> None:
    """
    Attach SQLAlchemy pool event listeners for observability.

    Logs:
      - ``POOL_CHECKOUT``:   A connection was checked out.
      - ``POOL_CHECKIN``:    A connection was returned, with hold time.
      - ``POOL_INVALIDATE``: A connection was invalidated (e.g. broken socket).
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug("POOL_CHECKOUT", pool=pool.status())

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = (
            round((time.monotonic() - checkout_time) * 1000, 1)
            if checkout_time is not None
            else None
        )
        _pool_logger.debug("POOL_CHECKIN", held_ms=held_ms)

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning(
            "POOL_INVALIDATE",
            error=str(exception) if exception else None,
        )


def get_pool_status(db: Database) -> Dict[str, Any]:
    """Return a snapshot of connection-pool state for health logging."""
    return {"status": db.engine.pool.status()}
