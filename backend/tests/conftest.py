"""
Shared fixtures for the top-up bot tests.

Everything runs against in-memory collaborators; the payment gateway is a
scripted fake except in the Midtrans and API tests, which drive the real
client through httpx.MockTransport.
"""

import pytest

from pipeline.orchestrator import TopupOrchestrator
from schemas.topup import DriverRecord
from services.driver_directory import InMemoryDriverDirectory
from services.notifier import InMemoryMessageTransport, Notifier
from services.rate_limiter import RateLimiter
from tests.fakes import ADMIN, IDENTITY, OTHER_IDENTITY, FakeClock, FakeGateway


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory():
    return InMemoryDriverDirectory([
        DriverRecord(identity=IDENTITY, name="Budi Santoso", email="budi@example.com", balance=100_000),
        DriverRecord(identity=OTHER_IDENTITY, name="Siti Aminah", balance=0),
    ])


@pytest.fixture
def transport():
    return InMemoryMessageTransport()


@pytest.fixture
def notifier(transport):
    return Notifier(transport, admin_number=ADMIN, send_timeout_seconds=1.0)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(window_seconds=300, max_requests=3, clock=clock)


@pytest.fixture
def orchestrator(directory, gateway, notifier, rate_limiter):
    return TopupOrchestrator(
        directory=directory,
        gateway=gateway,
        notifier=notifier,
        rate_limiter=rate_limiter,
        gateway_timeout_seconds=0.5,
        directory_timeout_seconds=0.5,
        max_credit_attempts=3,
    )
