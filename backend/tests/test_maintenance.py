import asyncio
from datetime import timedelta

import pytest

from schemas.errors import DirectoryWriteFailure
from schemas.topup import GatewayEventKind, utcnow
from tasks.maintenance import maintenance_loop, run_maintenance_cycle
from tests.fakes import ADMIN, IDENTITY, make_event


async def hold_credit(orchestrator, directory):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    directory.fail_updates = 1
    with pytest.raises(DirectoryWriteFailure):
        await orchestrator.on_gateway_event(make_event(ticket.order_id, GatewayEventKind.SUCCESS))
    return ticket.order_id


@pytest.mark.asyncio
async def test_cycle_recovers_held_credit(orchestrator, directory, transport):
    order_id = await hold_credit(orchestrator, directory)

    summary = await run_maintenance_cycle(orchestrator)

    assert summary["credits_recovered"] == 1
    assert await orchestrator.orders.get(order_id) is None
    assert (await directory.lookup(IDENTITY)).balance == 150_000
    assert "TOP-UP BERHASIL" in transport.messages_to(IDENTITY)[-1]


@pytest.mark.asyncio
async def test_retries_stop_and_alert_after_max_attempts(orchestrator, directory, transport):
    # max_credit_attempts is 3 in the fixture; the webhook was attempt 1
    order_id = await hold_credit(orchestrator, directory)
    directory.fail_updates = 100

    for _ in range(4):
        await run_maintenance_cycle(orchestrator)

    order = await orchestrator.orders.get(order_id)
    assert order.credit_attempts == 3
    assert order.credit_escalated is True
    assert directory.update_calls == 3

    alerts = [m for m in transport.messages_to(ADMIN) if "PAYMENT ERROR" in m]
    assert len(alerts) == 2  # first failure + exhaustion


@pytest.mark.asyncio
async def test_escalated_order_still_reconciles_on_redelivery(orchestrator, directory):
    order_id = await hold_credit(orchestrator, directory)
    directory.fail_updates = 100
    for _ in range(3):
        await run_maintenance_cycle(orchestrator)

    directory.fail_updates = 0
    outcome = await orchestrator.on_gateway_event(make_event(order_id, GatewayEventKind.SUCCESS))
    assert outcome.new_balance == 150_000


@pytest.mark.asyncio
async def test_stale_orders_alerted_once_and_kept(orchestrator, transport):
    ticket = await orchestrator.create_order(IDENTITY, 50_000)
    later = utcnow() + orchestrator.stale_after + timedelta(minutes=1)

    assert await orchestrator.alert_stale_orders(now=later) == 1
    assert await orchestrator.alert_stale_orders(now=later) == 0

    assert await orchestrator.orders.get(ticket.order_id) is not None
    stale_alerts = [m for m in transport.messages_to(ADMIN) if "ORDER BELUM SELESAI" in m]
    assert len(stale_alerts) == 1


@pytest.mark.asyncio
async def test_fresh_orders_not_stale(orchestrator):
    await orchestrator.create_order(IDENTITY, 50_000)
    assert await orchestrator.alert_stale_orders() == 0


@pytest.mark.asyncio
async def test_cycle_sweeps_rate_limit_records(orchestrator, clock):
    await orchestrator.create_order(IDENTITY, 50_000)
    clock.advance(301)

    summary = await run_maintenance_cycle(orchestrator)

    assert summary["rate_limit_evicted"] == 1
    assert len(orchestrator.rate_limiter) == 0


@pytest.mark.asyncio
async def test_loop_survives_failing_cycle(orchestrator, monkeypatch):
    calls = []

    async def flaky_sweep():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")
        return 0

    monkeypatch.setattr(orchestrator.rate_limiter, "sweep_expired", flaky_sweep)

    task = asyncio.create_task(maintenance_loop(orchestrator, interval_seconds=0.01))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(calls) >= 2
