# storage/pending_orders.py
# ============================================================================
# DRIVER TOP-UP BOT — PENDING ORDER TABLE
# ============================================================================
# Live, in-memory table of non-terminal orders. Terminal orders never stay
# here: they are removed in the same step that finalizes them and their
# snapshot goes to the transaction log.
#
# Table invariants:
#   - at most one order per identity
#   - an order id is accepted once per table lifetime (no reuse after removal)
#   - only non-terminal orders are stored
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Set

import structlog

from schemas.errors import DuplicatePending, TopupError
from schemas.topup import TopupOrder

logger = structlog.get_logger().bind(component="pending_orders")


# =============================================================================
# PER-KEY LOCKS
# =============================================================================

class KeyedLock:
    """
    Registry of asyncio.Lock objects, one per key.

    asyncio.Lock wakes waiters in FIFO order, so everything queued on a key
    runs in arrival order. Entries are dropped when no task holds or waits
    on them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


# =============================================================================
# INTERFACE
# =============================================================================

class IPendingOrderTable(ABC):
    """Pending order table contract."""

    @abstractmethod
    async def insert(self, order: TopupOrder) -> TopupOrder:
        """
        Add a new order.

        Raises:
            DuplicatePending: identity already has an order in the table
            TopupError: order id already used, or order is terminal
        """
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[TopupOrder]:
        pass

    @abstractmethod
    async def get_by_identity(self, identity: str) -> Optional[TopupOrder]:
        pass

    @abstractmethod
    async def replace(self, order: TopupOrder) -> TopupOrder:
        """Swap in a newer version of an order that is already present."""
        pass

    @abstractmethod
    async def remove(self, order_id: str) -> Optional[TopupOrder]:
        pass

    @abstractmethod
    async def list_pending(self) -> List[TopupOrder]:
        pass

    @abstractmethod
    async def list_older_than(self, cutoff: datetime) -> List[TopupOrder]:
        pass

    @abstractmethod
    async def list_credit_held(self) -> List[TopupOrder]:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryPendingOrderTable(IPendingOrderTable):
    """Dict-backed table with an identity index."""

    def __init__(self):
        self._orders: Dict[str, TopupOrder] = {}
        self._by_identity: Dict[str, str] = {}
        self._issued_ids: Set[str] = set()
        self._lock = asyncio.Lock()

    async def insert(self, order: TopupOrder) -> TopupOrder:
        if order.is_terminal:
            raise TopupError(f"refusing to store terminal order {order.order_id}")

        async with self._lock:
            if order.order_id in self._issued_ids:
                raise TopupError(f"order id {order.order_id} already used")

            existing_id = self._by_identity.get(order.identity)
            if existing_id is not None:
                raise DuplicatePending(
                    f"{order.identity} already has pending order {existing_id}"
                )

            self._orders[order.order_id] = order
            self._by_identity[order.identity] = order.order_id
            self._issued_ids.add(order.order_id)

        logger.debug("order_inserted", order_id=order.order_id, identity=order.identity)
        return order

    async def get(self, order_id: str) -> Optional[TopupOrder]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_by_identity(self, identity: str) -> Optional[TopupOrder]:
        async with self._lock:
            order_id = self._by_identity.get(identity)
            return self._orders.get(order_id) if order_id else None

    async def replace(self, order: TopupOrder) -> TopupOrder:
        if order.is_terminal:
            raise TopupError(f"refusing to store terminal order {order.order_id}")

        async with self._lock:
            current = self._orders.get(order.order_id)
            if current is None:
                raise TopupError(f"order {order.order_id} is not in the table")
            if order.version <= current.version:
                raise TopupError(
                    f"stale write for {order.order_id}: v{order.version} <= v{current.version}"
                )
            self._orders[order.order_id] = order
            return order

    async def remove(self, order_id: str) -> Optional[TopupOrder]:
        async with self._lock:
            order = self._orders.pop(order_id, None)
            if order is not None and self._by_identity.get(order.identity) == order_id:
                del self._by_identity[order.identity]
            return order

    async def list_pending(self) -> List[TopupOrder]:
        async with self._lock:
            return sorted(self._orders.values(), key=lambda o: o.created_at)

    async def list_older_than(self, cutoff: datetime) -> List[TopupOrder]:
        async with self._lock:
            return [o for o in self._orders.values() if o.created_at < cutoff]

    async def list_credit_held(self) -> List[TopupOrder]:
        async with self._lock:
            return [o for o in self._orders.values() if o.is_credit_held]

    async def count(self) -> int:
        async with self._lock:
            return len(self._orders)


__all__ = ["KeyedLock", "IPendingOrderTable", "InMemoryPendingOrderTable"]
