"""
Custom exception hierarchy for the trade ledger.

Hierarchy:

    TradeLedgerError (base)
    ├── OperationalError          transient/retryable (broker, database connectivity)
    │   ├── BrokerUnavailableError
    │   └── TransientPersistenceError
    ├── DataError                 bad message, dead-letter it, keep consuming
    │   ├── MessageDecodeError
    │   ├── ValidationError
    │   ├── UnresolvedInstrumentError
    │   └── OversellError
    └── InvariantError            ledger invariant violation

Rules:
    - OperationalError: retry with backoff; the broker connection manager owns
      broker outages, the worker owns bounded persistence retries.
    - DataError: nack without requeue so the message lands in the dead-letter queue.
    - InvariantError: same routing as DataError, logged at critical level.
"""
from typing import Iterable


class TradeLedgerError(Exception):
    """Base exception for all trade ledger errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradeLedgerError):
    """Transient/retryable error: broker or database connectivity."""
    pass


class BrokerUnavailableError(OperationalError):
    """No broker connection could be established for this call.

    Infrastructure failure, not a business error. Callers retry.
    """
    pass


class TransientPersistenceError(OperationalError):
    """Database connectivity loss, deadlock or serialization failure.

    The unit of work was rolled back and may be retried as a whole.
    """
    pass


# ============ DATA (bad message, dead-letter) ============

class DataError(TradeLedgerError):
    """Permanent per-message failure.

    Treatment: roll back, nack without requeue, continue consuming.
    """
    pass


class MessageDecodeError(DataError):
    """Message body is not valid JSON or has the wrong shape for its routing key."""
    pass


class ValidationError(DataError):
    """A trade payload failed field validation (missing or out-of-range values)."""
    pass


class UnresolvedInstrumentError(DataError):
    """One or more stock symbols in a message have no instrument row."""

    def __init__(self, symbols: Iterable[str]):
        self.symbols = sorted(set(symbols))
        super().__init__(f"Unresolved instrument symbols: {', '.join(self.symbols)}")


class OversellError(DataError):
    """A sell exceeds the held quantity while the oversell policy is ``reject``."""
    pass


# ============ INVARIANT (ledger corruption) ============

class InvariantError(TradeLedgerError):
    """Ledger invariant violation (e.g. negative position quantity)."""
    pass
