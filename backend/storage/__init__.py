# storage/__init__.py
"""
In-memory stores for live orders and the append-only transaction log.
"""

from storage.pending_orders import KeyedLock, IPendingOrderTable, InMemoryPendingOrderTable
from storage.transaction_log import ITransactionLog, InMemoryTransactionLog

__all__ = [
    "KeyedLock",
    "IPendingOrderTable",
    "InMemoryPendingOrderTable",
    "ITransactionLog",
    "InMemoryTransactionLog",
]
