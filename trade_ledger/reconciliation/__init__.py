"""
Position reconciliation: weighted-average cost accounting per (user, instrument).
"""
from trade_ledger.reconciliation.engine import (
    OversellPolicy,
    ReconcileAction,
    ReconcileResult,
    apply_trade,
    reconcile,
)

__all__ = [
    "OversellPolicy",
    "ReconcileAction",
    "ReconcileResult",
    "apply_trade",
    "reconcile",
]
