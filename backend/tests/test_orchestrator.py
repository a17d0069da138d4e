import asyncio

import pytest

from pipeline.orchestrator import TopupOrchestrator
from schemas.errors import (
    AlreadyFinalized,
    AmountOutOfRange,
    DirectoryTimeout,
    DirectoryWriteFailure,
    DuplicatePending,
    GatewayError,
    GatewayTimeout,
    InvalidIdentity,
    OrderNotFound,
    RateLimited,
    UnknownDriver,
)
from schemas.topup import DriverRecord, GatewayEventKind, OrderStatus
from services.driver_directory import InMemoryDriverDirectory
from services.rate_limiter import RateLimiter
from storage.pending_orders import InMemoryPendingOrderTable
from storage.transaction_log import InMemoryTransactionLog
from tests.fakes import ADMIN, IDENTITY, OTHER_IDENTITY, make_event


async def balance_of(directory, identity):
    return (await directory.lookup(identity)).balance


# =============================================================================
# ADMISSION
# =============================================================================

@pytest.mark.asyncio
async def test_create_order_opens_payment_and_stores_order(orchestrator, gateway):
    ticket = await orchestrator.create_order("081234567890", 50_000)

    assert ticket.status == OrderStatus.AWAITING_PAYMENT
    assert ticket.order_id.startswith(f"TOPUP_{IDENTITY}_")
    assert ticket.payment_url == f"https://pay.example/{ticket.order_id}"
    assert gateway.created == [{"order_id": ticket.order_id, "amount": 50_000, "identity": IDENTITY}]

    order = await orchestrator.orders.get(ticket.order_id)
    assert order.status == OrderStatus.AWAITING_PAYMENT
    assert order.gateway_payment_ref == f"snap-{ticket.order_id}"
    assert order.snapshot.name == "Budi Santoso"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, 999, 10_000_001, 50_000_000])
async def test_out_of_range_amount_inserts_nothing(orchestrator, gateway, amount):
    with pytest.raises(AmountOutOfRange):
        await orchestrator.create_order(IDENTITY, amount)

    assert await orchestrator.orders.count() == 0
    assert gateway.created == []


@pytest.mark.asyncio
async def test_invalid_identity_rejected(orchestrator):
    with pytest.raises(InvalidIdentity):
        await orchestrator.create_order("12ab", 50_000)


@pytest.mark.asyncio
async def test_unknown_driver_rejected(orchestrator, gateway):
    with pytest.raises(UnknownDriver):
        await orchestrator.create_order("6289999999999", 50_000)
    assert gateway.created == []


@pytest.mark.asyncio
@pytest.mark.parametrize("second_amount", [50_000, 1_000, 2_000_000])
async def test_second_order_for_same_identity_is_duplicate(orchestrator, gateway, second_amount):
    await orchestrator.create_order(IDENTITY, 50_000)

    with pytest.raises(DuplicatePending):
        await orchestrator.create_order(IDENTITY, second_amount)

    assert len(gateway.created) == 1
    assert await orchestrator.orders.count() == 1


@pytest.mark.asyncio
async def test_duplicate_rejections_still_consume_rate_limit_slots(orchestrator):
    await orchestrator.create_order(IDENTITY, 50_000)
    for _ in range(2):
        with pytest.raises(DuplicatePending):
            await orchestrator.create_order(IDENTITY, 50_000)

    with pytest.raises(RateLimited):
        await orchestrator.create_order(IDENTITY, 50_000)


@pytest.mark.asyncio
async def test_rate_limit_window_through_create_order(orchestrator, clock):
    window_opened = clock.now
    for _ in range(3):
        ticket = await orchestrator.create_order(IDENTITY, 50_000)
        await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.EXPIRED))
        clock.advance(60)

    with pytest.raises(RateLimited):
        await orchestrator.create_order(IDENTITY, 50_000)
    assert await orchestrator.orders.count() == 0

    # 5 minutes + 1 second after the first request of the window
    clock.advance(window_opened + 301 - clock.now)
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    assert await orchestrator.orders.get(ticket.order_id) is not None


@pytest.mark.asyncio
async def test_injected_collaborators_are_used_even_when_empty(directory, gateway, notifier, clock):
    rate_limiter = RateLimiter(window_seconds=60, max_requests=1, clock=clock)
    orders = InMemoryPendingOrderTable()
    ledger = InMemoryTransactionLog()

    orchestrator = TopupOrchestrator(
        directory=directory,
        gateway=gateway,
        notifier=notifier,
        orders=orders,
        ledger=ledger,
        rate_limiter=rate_limiter,
    )

    assert orchestrator.rate_limiter is rate_limiter
    assert orchestrator.orders is orders
    assert orchestrator.ledger is ledger

    await orchestrator.create_order(IDENTITY, 50_000)
    with pytest.raises(RateLimited):
        await orchestrator.create_order(IDENTITY, 10_000)


@pytest.mark.asyncio
async def test_gateway_failure_leaves_no_order(orchestrator, gateway):
    gateway.fail_with = GatewayError("boom")
    with pytest.raises(GatewayError):
        await orchestrator.create_order(IDENTITY, 50_000)
    assert await orchestrator.orders.count() == 0

    gateway.fail_with = None
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    assert await orchestrator.orders.get(ticket.order_id) is not None


@pytest.mark.asyncio
async def test_gateway_timeout_is_explicit(orchestrator, gateway):
    gateway.delay = 1.0
    orchestrator.gateway_timeout_seconds = 0.05

    with pytest.raises(GatewayTimeout):
        await orchestrator.create_order(IDENTITY, 50_000)
    assert await orchestrator.orders.count() == 0


@pytest.mark.asyncio
async def test_directory_timeout_is_explicit(orchestrator, directory):
    directory.lookup_delay = 1.0
    orchestrator.directory_timeout_seconds = 0.05

    with pytest.raises(DirectoryTimeout):
        await orchestrator.create_order(IDENTITY, 50_000)
    assert await orchestrator.orders.count() == 0


@pytest.mark.asyncio
async def test_concurrent_creates_for_one_identity_admit_one(orchestrator, gateway):
    results = await asyncio.gather(
        orchestrator.create_order(IDENTITY, 50_000),
        orchestrator.create_order(IDENTITY, 75_000),
        return_exceptions=True,
    )

    tickets = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(tickets) == 1
    assert len(errors) == 1 and isinstance(errors[0], DuplicatePending)
    assert len(gateway.created) == 1


# =============================================================================
# RECONCILIATION
# =============================================================================

@pytest.mark.asyncio
async def test_success_scenario_credits_balance_and_notifies(orchestrator, directory, transport):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)

    outcome = await orchestrator.on_gateway_event(
        make_event(ticket.order_id, GatewayEventKind.SUCCESS, 50_000, gateway_ref="trx-1")
    )

    assert outcome.status == OrderStatus.SUCCEEDED
    assert outcome.new_balance == 150_000
    assert await balance_of(directory, IDENTITY) == 150_000
    assert await orchestrator.orders.get(ticket.order_id) is None

    driver_messages = transport.messages_to(IDENTITY)
    assert len(driver_messages) == 1
    assert "TOP-UP BERHASIL" in driver_messages[0]
    assert "Rp 150.000" in driver_messages[0]
    assert any("PAYMENT SUCCESS" in m for m in transport.messages_to(ADMIN))

    transactions = await orchestrator.list_transactions(IDENTITY)
    assert len(transactions) == 1
    assert transactions[0].previous_balance == 100_000
    assert transactions[0].new_balance == 150_000
    assert transactions[0].gateway_ref == "trx-1"


@pytest.mark.asyncio
async def test_duplicate_success_credits_once(orchestrator, directory, transport):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    event = make_event(ticket.order_id, GatewayEventKind.SUCCESS, 50_000)

    await orchestrator.on_gateway_event(event)
    with pytest.raises(AlreadyFinalized):
        await orchestrator.on_gateway_event(event)

    assert await balance_of(directory, IDENTITY) == 150_000
    assert len(transport.messages_to(IDENTITY)) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_success_credits_once(orchestrator, directory):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    event = make_event(ticket.order_id, GatewayEventKind.SUCCESS, 50_000)

    results = await asyncio.gather(
        *(orchestrator.on_gateway_event(event) for _ in range(3)),
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert sum(1 for r in results if isinstance(r, AlreadyFinalized)) == 2
    assert await balance_of(directory, IDENTITY) == 150_000


@pytest.mark.asyncio
async def test_pending_after_success_is_rejected(orchestrator):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.SUCCESS))

    with pytest.raises(AlreadyFinalized):
        await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.PENDING))

    finalized = await orchestrator.ledger.get_finalized(ticket.order_id)
    assert finalized.status == OrderStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_pending_updates_in_place_and_notifies_once(orchestrator, transport):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)

    first = await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.PENDING))
    second = await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.PENDING))

    assert first.notified is True
    assert second.notified is False
    order = await orchestrator.orders.get(ticket.order_id)
    assert order.status == OrderStatus.PENDING

    driver_messages = transport.messages_to(IDENTITY)
    assert len(driver_messages) == 1
    assert "sedang diproses" in driver_messages[0]


@pytest.mark.asyncio
async def test_expired_after_pending_is_accepted(orchestrator, directory, transport):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.PENDING))

    outcome = await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.EXPIRED))

    assert outcome.status == OrderStatus.EXPIRED
    assert await orchestrator.orders.get(ticket.order_id) is None
    assert await balance_of(directory, IDENTITY) == 100_000
    assert "expired" in transport.messages_to(IDENTITY)[-1]
    assert "TOPUP <jumlah>" in transport.messages_to(IDENTITY)[-1]


@pytest.mark.asyncio
@pytest.mark.parametrize("kind,status,phrase", [
    (GatewayEventKind.FAILED, OrderStatus.FAILED, "gagal"),
    (GatewayEventKind.CANCELLED, OrderStatus.CANCELLED, "dibatalkan"),
    (GatewayEventKind.EXPIRED, OrderStatus.EXPIRED, "expired"),
])
async def test_closing_events_remove_order(orchestrator, directory, transport, kind, status, phrase):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)

    outcome = await orchestrator.on_gateway_event(make_event(ticket.order_id, kind))

    assert outcome.status == status
    assert await orchestrator.orders.count() == 0
    assert await balance_of(directory, IDENTITY) == 100_000
    assert phrase in transport.messages_to(IDENTITY)[-1]
    assert (await orchestrator.ledger.get_finalized(ticket.order_id)).status == status

    # A fresh order is allowed once the previous one is closed
    await orchestrator.create_order(IDENTITY, 20_000)


@pytest.mark.asyncio
async def test_unknown_order_is_not_found(orchestrator):
    with pytest.raises(OrderNotFound):
        await orchestrator.on_gateway_event(make_event("TOPUP_nope", GatewayEventKind.SUCCESS))


@pytest.mark.asyncio
async def test_integer_balance_math_over_many_topups(orchestrator, directory):
    amounts = [1_001, 33_333, 9_999_999]
    for amount in amounts:
        ticket = await orchestrator.create_order(OTHER_IDENTITY, amount)
        await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.SUCCESS, amount))

    assert await balance_of(directory, OTHER_IDENTITY) == sum(amounts)


# =============================================================================
# BALANCE WRITE FAILURE
# =============================================================================

@pytest.mark.asyncio
async def test_write_failure_holds_order_and_alerts_operator(orchestrator, directory, transport):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    directory.fail_updates = 1

    with pytest.raises(DirectoryWriteFailure):
        await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.SUCCESS))

    order = await orchestrator.orders.get(ticket.order_id)
    assert order is not None
    assert order.credit_pending_amount == 50_000
    assert order.credit_attempts == 1
    assert await balance_of(directory, IDENTITY) == 100_000
    assert transport.messages_to(IDENTITY) == []
    assert any("PAYMENT ERROR" in m for m in transport.messages_to(ADMIN))

    with pytest.raises(DuplicatePending):
        await orchestrator.create_order(IDENTITY, 10_000)


@pytest.mark.asyncio
async def test_redelivered_success_completes_held_credit(orchestrator, directory, transport):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    directory.fail_updates = 1
    event = make_event(ticket.order_id, GatewayEventKind.SUCCESS)

    with pytest.raises(DirectoryWriteFailure):
        await orchestrator.on_gateway_event(event)
    outcome = await orchestrator.on_gateway_event(event)

    assert outcome.new_balance == 150_000
    assert await balance_of(directory, IDENTITY) == 150_000
    assert await orchestrator.orders.count() == 0
    assert len(transport.messages_to(IDENTITY)) == 1


@pytest.mark.asyncio
async def test_closing_event_on_held_order_is_ignored(orchestrator, directory):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    directory.fail_updates = 1
    with pytest.raises(DirectoryWriteFailure):
        await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.SUCCESS))

    with pytest.raises(AlreadyFinalized):
        await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.EXPIRED))

    order = await orchestrator.orders.get(ticket.order_id)
    assert order.is_credit_held


class LateAckDirectory(InMemoryDriverDirectory):
    """Applies the write, then stalls past the caller's timeout."""

    def __init__(self, drivers):
        super().__init__(drivers)
        self.stall_after_write = 0.0

    async def update_balance(self, identity, new_balance):
        await super().update_balance(identity, new_balance)
        if self.stall_after_write:
            await asyncio.sleep(self.stall_after_write)


@pytest.mark.asyncio
async def test_write_landing_after_timeout_is_not_credited_twice(gateway, notifier, rate_limiter, transport):
    directory = LateAckDirectory([DriverRecord(identity=IDENTITY, name="Budi Santoso", balance=100_000)])
    orchestrator = TopupOrchestrator(
        directory=directory,
        gateway=gateway,
        notifier=notifier,
        rate_limiter=rate_limiter,
        directory_timeout_seconds=0.05,
    )
    ticket = await orchestrator.create_order(IDENTITY, 50_000)

    directory.stall_after_write = 0.5
    with pytest.raises(DirectoryWriteFailure):
        await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.SUCCESS))

    held = await orchestrator.orders.get(ticket.order_id)
    assert held.credit_previous_balance == 100_000
    assert held.credit_target_balance == 150_000

    directory.stall_after_write = 0.0
    outcomes = await orchestrator.retry_held_credits()

    assert [o.new_balance for o in outcomes] == [150_000]
    assert await balance_of(directory, IDENTITY) == 150_000
    assert directory.update_calls == 1
    transaction = await orchestrator.ledger.get_transaction(ticket.order_id)
    assert (transaction.previous_balance, transaction.new_balance) == (100_000, 150_000)
    assert sum("TOP-UP BERHASIL" in m for m in transport.messages_to(IDENTITY)) == 1


@pytest.mark.asyncio
async def test_held_credit_rewrites_when_earlier_write_never_landed(orchestrator, directory):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    directory.fail_updates = 1
    with pytest.raises(DirectoryWriteFailure):
        await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.SUCCESS))

    assert (await orchestrator.orders.get(ticket.order_id)).credit_target_balance == 150_000

    await orchestrator.retry_held_credits()

    assert await balance_of(directory, IDENTITY) == 150_000
    assert directory.update_calls == 2


# =============================================================================
# OPERATOR RECONCILE
# =============================================================================

@pytest.mark.asyncio
async def test_reconcile_from_gateway_applies_status(orchestrator, gateway, directory):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    gateway.statuses[ticket.order_id] = make_event(ticket.order_id, GatewayEventKind.SUCCESS)

    outcome = await orchestrator.reconcile_from_gateway(ticket.order_id)

    assert outcome.status == OrderStatus.SUCCEEDED
    assert await balance_of(directory, IDENTITY) == 150_000


@pytest.mark.asyncio
async def test_status_reports_counts(orchestrator):
    await orchestrator.create_order(IDENTITY, 50_000)
    status = await orchestrator.status()
    assert status["pending_orders"] == 1
    assert status["rate_limit_records"] == 1
    assert status["credit_held_orders"] == 0
