# storage/transaction_log.py
# ============================================================================
# DRIVER TOP-UP BOT — TRANSACTION LOG
# ============================================================================
# Append-only record of completed top-ups and of every order that reached a
# terminal state. Entries are frozen pydantic models; nothing is updated or
# deleted once written.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import structlog

from schemas.errors import TopupError
from schemas.topup import FinalizedOrder, Transaction

logger = structlog.get_logger().bind(component="transaction_log")


class ITransactionLog(ABC):
    """Transaction log contract"""

    @abstractmethod
    async def append_transaction(self, transaction: Transaction) -> None:
        pass

    @abstractmethod
    async def record_finalized(self, entry: FinalizedOrder) -> None:
        pass

    @abstractmethod
    async def get_finalized(self, order_id: str) -> Optional[FinalizedOrder]:
        pass

    @abstractmethod
    async def get_transaction(self, order_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def list_for_identity(self, identity: str) -> List[Transaction]:
        pass


class InMemoryTransactionLog(ITransactionLog):
    """Process-local append-only log"""

    def __init__(self):
        self._transactions: List[Transaction] = []
        self._by_order: Dict[str, Transaction] = {}
        self._finalized: Dict[str, FinalizedOrder] = {}
        self._lock = asyncio.Lock()

    async def append_transaction(self, transaction: Transaction) -> None:
        async with self._lock:
            if transaction.order_id in self._by_order:
                raise TopupError(f"transaction for {transaction.order_id} already recorded")
            self._transactions.append(transaction)
            self._by_order[transaction.order_id] = transaction

        logger.info(
            "transaction_recorded",
            transaction_id=transaction.transaction_id,
            order_id=transaction.order_id,
            identity=transaction.identity,
            amount=transaction.amount,
            new_balance=transaction.new_balance,
        )

    async def record_finalized(self, entry: FinalizedOrder) -> None:
        async with self._lock:
            if entry.order_id in self._finalized:
                raise TopupError(f"order {entry.order_id} already finalized")
            self._finalized[entry.order_id] = entry

    async def get_finalized(self, order_id: str) -> Optional[FinalizedOrder]:
        async with self._lock:
            return self._finalized.get(order_id)

    async def get_transaction(self, order_id: str) -> Optional[Transaction]:
        async with self._lock:
            return self._by_order.get(order_id)

    async def list_for_identity(self, identity: str) -> List[Transaction]:
        async with self._lock:
            return [t for t in self._transactions if t.identity == identity]


__all__ = ["ITransactionLog", "InMemoryTransactionLog"]
