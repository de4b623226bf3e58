"""
Trade ledger: asynchronous trade ingestion and position reconciliation.
"""

__version__ = "1.0.0"
