# pipeline/orchestrator.py
# ============================================================================
# DRIVER TOP-UP BOT — ORDER ORCHESTRATOR
# ============================================================================
# Admission of top-up requests and reconciliation of gateway events.
#
# Order lifecycle:
#   CREATED -> AWAITING_PAYMENT -> {SUCCEEDED | FAILED | EXPIRED | CANCELLED}
#   PENDING is a self-loop on AWAITING_PAYMENT ("still processing").
#
# Locking:
#   - create_order holds the identity lock
#   - on_gateway_event holds the order lock, then the identity lock while
#     the balance is read and written
#   Order lock is always taken before identity lock.
#
# Features:
#   - duplicate-pending guard and rate limiter as independent gates
#   - bounded timeouts on every gateway and directory call
#   - idempotent reconciliation (finalized orders answer AlreadyFinalized)
#   - balance write failure holds the order and alerts the operator
#   - held credits retried by the maintenance loop; a write that landed
#     after its timeout is recognised by the attempted target balance
# ============================================================================

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Dict, List, Optional, Tuple, TypeVar

import structlog

from integrations.midtrans import IPaymentGateway
from schemas.errors import (
    AlreadyFinalized,
    DirectoryError,
    DirectoryTimeout,
    DirectoryWriteFailure,
    DuplicatePending,
    GatewayTimeout,
    OrderNotFound,
    UnknownDriver,
)
from schemas.topup import (
    DriverRecord,
    FinalizedOrder,
    GatewayEvent,
    GatewayEventKind,
    OrderStatus,
    OrderTicket,
    ReconcileOutcome,
    TopupOrder,
    Transaction,
    utcnow,
)
from services.driver_directory import IDriverDirectory
from services.notifier import Notifier
from services.rate_limiter import RateLimiter
from services.validation import MAX_AMOUNT, MIN_AMOUNT, normalize_identity, validate
from storage.pending_orders import InMemoryPendingOrderTable, IPendingOrderTable, KeyedLock
from storage.transaction_log import InMemoryTransactionLog, ITransactionLog

logger = structlog.get_logger().bind(component="orchestrator")

T = TypeVar("T")


class TopupOrchestrator:
    """
    Drives every top-up order from admission to a terminal state.

    Admission errors, gateway errors and reconcile errors are raised as
    exceptions from schemas.errors; callers decide what to show whom.
    """

    def __init__(
        self,
        directory: IDriverDirectory,
        gateway: IPaymentGateway,
        notifier: Notifier,
        orders: Optional[IPendingOrderTable] = None,
        ledger: Optional[ITransactionLog] = None,
        rate_limiter: Optional[RateLimiter] = None,
        min_amount: int = MIN_AMOUNT,
        max_amount: int = MAX_AMOUNT,
        gateway_timeout_seconds: float = 15.0,
        directory_timeout_seconds: float = 10.0,
        max_credit_attempts: int = 5,
        stale_after: timedelta = timedelta(hours=24, minutes=30),
    ):
        self.directory = directory
        self.gateway = gateway
        self.notifier = notifier
        self.orders = orders if orders is not None else InMemoryPendingOrderTable()
        self.ledger = ledger if ledger is not None else InMemoryTransactionLog()
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.min_amount = min_amount
        self.max_amount = max_amount
        self.gateway_timeout_seconds = gateway_timeout_seconds
        self.directory_timeout_seconds = directory_timeout_seconds
        self.max_credit_attempts = max_credit_attempts
        self.stale_after = stale_after

        self._order_locks = KeyedLock()
        self._identity_locks = KeyedLock()

    # =========================================================================
    # BOUNDED CALLS
    # =========================================================================

    async def _directory_call(self, call: Awaitable[T], what: str) -> T:
        try:
            async with asyncio.timeout(self.directory_timeout_seconds):
                return await call
        except TimeoutError as e:
            raise DirectoryTimeout(
                f"{what} exceeded {self.directory_timeout_seconds}s"
            ) from e

    async def _gateway_call(self, call: Awaitable[T], what: str) -> T:
        try:
            async with asyncio.timeout(self.gateway_timeout_seconds):
                return await call
        except TimeoutError as e:
            raise GatewayTimeout(
                f"{what} exceeded {self.gateway_timeout_seconds}s"
            ) from e

    # =========================================================================
    # ADMISSION
    # =========================================================================

    async def create_order(self, identity: Any, amount: Any) -> OrderTicket:
        """
        Admit a top-up request and open a payment for it.

        Gates run in order: validation, rate limit, duplicate-pending guard,
        directory lookup. A denied duplicate still consumes its rate-limit
        slot. Nothing is inserted unless the gateway returned a payment.

        Raises:
            InvalidIdentity, AmountOutOfRange, RateLimited, DuplicatePending,
            UnknownDriver, DirectoryTimeout, GatewayError, GatewayTimeout
        """
        identity, amount = validate(identity, amount, self.min_amount, self.max_amount)
        log = logger.bind(identity=identity, amount=amount)

        await self.rate_limiter.enforce(identity)

        async with self._identity_locks.hold(identity):
            existing = await self.orders.get_by_identity(identity)
            if existing is not None:
                log.info("topup_rejected_duplicate", pending_order_id=existing.order_id)
                raise DuplicatePending(f"{identity} already has pending order {existing.order_id}")

            driver = await self._directory_call(self.directory.lookup(identity), "driver lookup")
            if driver is None:
                log.info("topup_rejected_unknown_driver")
                raise UnknownDriver(f"{identity} is not a registered driver")

            order = TopupOrder(
                order_id=TopupOrder.generate_order_id(identity),
                identity=identity,
                amount=amount,
                snapshot=driver,
            )
            log = log.bind(order_id=order.order_id, correlation_id=order.correlation_id)

            handle = await self._gateway_call(
                self.gateway.create_payment(order.order_id, amount, driver),
                "create payment",
            )

            order = order.with_updates(
                gateway_payment_ref=handle.ref,
                payment_url=handle.url,
                expires_at=handle.expires_at,
            ).transition_to(OrderStatus.AWAITING_PAYMENT)
            await self.orders.insert(order)

        log.info("order_created", status=order.status.value, driver_name=driver.name)
        return OrderTicket(
            order_id=order.order_id,
            amount=order.amount,
            status=order.status,
            payment_ref=handle.ref,
            payment_url=handle.url,
            qr_code=handle.qr,
            expires_at=handle.expires_at,
        )

    async def lookup_driver(self, identity: Any) -> DriverRecord:
        """Directory record for a chat sender (SALDO)."""
        identity = normalize_identity(identity)
        driver = await self._directory_call(self.directory.lookup(identity), "driver lookup")
        if driver is None:
            raise UnknownDriver(f"{identity} is not a registered driver")
        return driver

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def on_gateway_event(self, event: GatewayEvent) -> ReconcileOutcome:
        """
        Apply one authenticated gateway event.

        Raises:
            OrderNotFound: no live order and no record of one
            AlreadyFinalized: the order already reached a terminal state
            DirectoryWriteFailure: payment confirmed, balance not written;
                the order stays in the table for retry
        """
        log = logger.bind(order_id=event.order_id, event_kind=event.kind.value)
        log.info("gateway_event_received", amount=event.amount, transaction_status=event.transaction_status)

        async with self._order_locks.hold(event.order_id):
            order = await self.orders.get(event.order_id)

            if order is None:
                finalized = await self.ledger.get_finalized(event.order_id)
                if finalized is not None:
                    log.info("reconcile_already_finalized", final_status=finalized.status.value)
                    raise AlreadyFinalized(event.order_id, f"{event.order_id} already {finalized.status.value}")
                log.warning("reconcile_order_not_found")
                raise OrderNotFound(event.order_id)

            if order.is_credit_held and event.kind != GatewayEventKind.SUCCESS:
                # Payment was already confirmed; only a credit retry may follow
                log.warning("reconcile_event_ignored_credit_held", held_amount=order.credit_pending_amount)
                raise AlreadyFinalized(event.order_id, f"{event.order_id} payment already confirmed")

            if event.kind == GatewayEventKind.SUCCESS:
                return await self._apply_success(order, event)
            if event.kind == GatewayEventKind.PENDING:
                return await self._apply_pending(order)
            return await self._apply_closed(order, event.kind.target_status)

    async def _apply_success(self, order: TopupOrder, event: GatewayEvent) -> ReconcileOutcome:
        if event.amount != order.amount:
            logger.warning(
                "gateway_amount_mismatch",
                order_id=order.order_id,
                order_amount=order.amount,
                event_amount=event.amount,
            )
        return await self._credit(
            order,
            amount=order.credit_pending_amount or event.amount,
            settlement_ref=event.gateway_ref or order.settlement_ref,
            payment_type=event.payment_type or order.payment_type,
        )

    async def _credit(
        self,
        order: TopupOrder,
        amount: int,
        settlement_ref: Optional[str],
        payment_type: Optional[str],
    ) -> ReconcileOutcome:
        """Read-modify-write the balance, then finalize. Caller holds the order lock."""
        log = logger.bind(order_id=order.order_id, identity=order.identity, correlation_id=order.correlation_id)

        attempted: Optional[Tuple[int, int]] = None

        async with self._identity_locks.hold(order.identity):
            try:
                driver = await self._directory_call(self.directory.lookup(order.identity), "balance read")
                if driver is None:
                    raise DirectoryError(f"driver {order.identity} no longer in directory")

                if order.credit_target_balance is not None and driver.balance == order.credit_target_balance:
                    # An earlier write landed after its timeout fired
                    previous_balance = order.credit_previous_balance
                    new_balance = driver.balance
                    log.warning("balance_write_already_applied", new_balance=new_balance)
                else:
                    previous_balance = driver.balance
                    new_balance = previous_balance + amount
                    attempted = (previous_balance, new_balance)
                    await self._directory_call(
                        self.directory.update_balance(order.identity, new_balance),
                        "balance write",
                    )
            except DirectoryError as e:
                await self._hold_credit(order, amount, settlement_ref, payment_type, e, attempted)
                raise DirectoryWriteFailure(order.order_id, str(e)) from e

            final = order.transition_to(OrderStatus.SUCCEEDED)
            transaction = Transaction(
                order_id=order.order_id,
                identity=order.identity,
                driver_name=order.snapshot.name,
                amount=amount,
                previous_balance=previous_balance,
                new_balance=new_balance,
                gateway_ref=settlement_ref or order.gateway_payment_ref,
                payment_type=payment_type,
                order_created_at=order.created_at,
            )
            await self._finalize(final)
            await self.ledger.append_transaction(transaction)

        log.info(
            "balance_credited",
            amount=amount,
            previous_balance=previous_balance,
            new_balance=new_balance,
            attempts=order.credit_attempts + 1,
        )
        await self.notifier.topup_succeeded(final, amount, new_balance)
        return ReconcileOutcome(
            order_id=order.order_id,
            status=OrderStatus.SUCCEEDED,
            new_balance=new_balance,
            transaction_id=transaction.transaction_id,
        )

    async def _hold_credit(
        self,
        order: TopupOrder,
        amount: int,
        settlement_ref: Optional[str],
        payment_type: Optional[str],
        error: Exception,
        attempted: Optional[Tuple[int, int]] = None,
    ) -> TopupOrder:
        first_failure = not order.is_credit_held
        previous_balance, target_balance = attempted or (
            order.credit_previous_balance,
            order.credit_target_balance,
        )
        held = order.with_updates(
            credit_pending_amount=amount,
            credit_previous_balance=previous_balance,
            credit_target_balance=target_balance,
            settlement_ref=settlement_ref,
            payment_type=payment_type,
            credit_attempts=order.credit_attempts + 1,
            last_credit_error=str(error),
        )
        await self.orders.replace(held)

        logger.error(
            "directory_write_failed",
            order_id=order.order_id,
            identity=order.identity,
            correlation_id=order.correlation_id,
            amount=amount,
            attempts=held.credit_attempts,
            error=str(error),
        )
        if first_failure:
            await self.notifier.credit_failed(held, str(error), held.credit_attempts)
        return held

    async def _apply_pending(self, order: TopupOrder) -> ReconcileOutcome:
        first_pending = order.status != OrderStatus.PENDING
        updated = order.transition_to(OrderStatus.PENDING)
        await self.orders.replace(updated)

        logger.info("order_pending", order_id=order.order_id, first=first_pending)
        if first_pending:
            await self.notifier.payment_processing(updated)
        return ReconcileOutcome(order_id=order.order_id, status=OrderStatus.PENDING, notified=first_pending)

    async def _apply_closed(self, order: TopupOrder, status: OrderStatus) -> ReconcileOutcome:
        final = order.transition_to(status)
        await self._finalize(final)

        logger.info("order_closed", order_id=order.order_id, identity=order.identity, status=status.value)
        await self.notifier.order_closed(final, status)
        return ReconcileOutcome(order_id=order.order_id, status=status)

    async def _finalize(self, final: TopupOrder) -> None:
        await self.ledger.record_finalized(FinalizedOrder(
            order_id=final.order_id,
            identity=final.identity,
            amount=final.amount,
            status=final.status,
            gateway_ref=final.settlement_ref or final.gateway_payment_ref,
            created_at=final.created_at,
        ))
        await self.orders.remove(final.order_id)

    async def reconcile_from_gateway(self, order_id: str) -> ReconcileOutcome:
        """Operator path: pull the order's status from the gateway and apply it."""
        event = await self._gateway_call(self.gateway.check_status(order_id), "status check")
        logger.info("manual_reconcile", order_id=order_id, event_kind=event.kind.value)
        return await self.on_gateway_event(event)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def retry_held_credits(self) -> List[ReconcileOutcome]:
        """Retry balance writes for held orders that have not been escalated."""
        outcomes: List[ReconcileOutcome] = []

        for candidate in await self.orders.list_credit_held():
            if candidate.credit_escalated:
                continue

            async with self._order_locks.hold(candidate.order_id):
                order = await self.orders.get(candidate.order_id)
                if order is None or not order.is_credit_held or order.credit_escalated:
                    continue

                try:
                    outcomes.append(await self._credit(
                        order,
                        amount=order.credit_pending_amount,
                        settlement_ref=order.settlement_ref,
                        payment_type=order.payment_type,
                    ))
                except DirectoryWriteFailure:
                    held = await self.orders.get(order.order_id)
                    if held is not None and held.credit_attempts >= self.max_credit_attempts:
                        escalated = held.with_updates(credit_escalated=True)
                        await self.orders.replace(escalated)
                        logger.error(
                            "credit_retry_exhausted",
                            order_id=held.order_id,
                            attempts=held.credit_attempts,
                        )
                        await self.notifier.credit_failed(
                            escalated,
                            held.last_credit_error or "unknown",
                            held.credit_attempts,
                        )

        return outcomes

    async def alert_stale_orders(self, now: Optional[datetime] = None) -> int:
        """
        Alert the operator once per order that has waited longer than
        stale_after. Orders are not expired here; only the gateway ends them.
        """
        cutoff = (now or utcnow()) - self.stale_after
        alerted = 0

        for candidate in await self.orders.list_older_than(cutoff):
            if candidate.stale_alerted or candidate.is_credit_held:
                continue

            async with self._order_locks.hold(candidate.order_id):
                order = await self.orders.get(candidate.order_id)
                if order is None or order.stale_alerted:
                    continue
                order = order.with_updates(stale_alerted=True)
                await self.orders.replace(order)

            age_minutes = int(((now or utcnow()) - order.created_at).total_seconds() // 60)
            logger.warning("order_stale", order_id=order.order_id, age_minutes=age_minutes)
            await self.notifier.stale_order(order, age_minutes)
            alerted += 1

        return alerted

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    async def list_pending(self) -> List[TopupOrder]:
        return await self.orders.list_pending()

    async def list_transactions(self, identity: str) -> List[Transaction]:
        return await self.ledger.list_for_identity(normalize_identity(identity))

    async def status(self) -> Dict[str, Any]:
        held = await self.orders.list_credit_held()
        return {
            "pending_orders": await self.orders.count(),
            "credit_held_orders": len(held),
            "rate_limit_records": len(self.rate_limiter),
            "active_order_locks": len(self._order_locks),
            "active_identity_locks": len(self._identity_locks),
        }


__all__ = ["TopupOrchestrator"]
