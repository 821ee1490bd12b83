import os

# Keep a local .env from leaking real credentials into the tests
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from rental_core.booking import BookingConflictResolver
from rental_core.database import Base, DatabaseSessionManager
from rental_core.ledger import ResourceLedger
from rental_core.lifecycle import OrderLifecycle
from rental_core.models import Resource, ResourceStatus
from rental_core.payments import PaymentService
from rental_core.providers import MockProvider, ProviderRegistry
from rental_core.webhooks import WebhookReconciler

NOW = datetime(2030, 1, 1, 12, 0, 0)


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def day(n: int) -> datetime:
    """Midnight ``n`` days after the test clock's starting day."""
    return datetime(NOW.year, NOW.month, NOW.day) + timedelta(days=n)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db(engine):
    return DatabaseSessionManager.from_engine(engine)


@pytest.fixture
def publisher():
    publisher = AsyncMock()
    publisher.publish.return_value = True
    publisher.exchange = None
    return publisher


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def ledger(db):
    return ResourceLedger(db)


@pytest.fixture
def booking(db, ledger, publisher, clock):
    return BookingConflictResolver(db, ledger, publisher, delivery_fee=1000, clock=clock)


@pytest.fixture
def lifecycle(db, ledger, publisher, clock):
    return OrderLifecycle(db, ledger, publisher, clock=clock)


@pytest.fixture
def mock_provider():
    return MockProvider("http://frontend.test")


@pytest.fixture
def registry(mock_provider):
    return ProviderRegistry([mock_provider])


@pytest.fixture
def payments(db, registry, lifecycle, publisher):
    return PaymentService(db, registry, lifecycle, publisher)


@pytest.fixture
def reconciler(db, payments, registry):
    return WebhookReconciler(db, payments, registry)


@pytest.fixture
def add_resource(db):
    async def _add(
        resource_id="res-1", owner_id="owner-1", price=10000, deposit_amount=5000,
        status=ResourceStatus.AVAILABLE,
    ):
        async with db.session() as session:
            async with session.begin():
                session.add(Resource(
                    id=resource_id,
                    owner_id=owner_id,
                    price=price,
                    deposit_amount=deposit_amount,
                    status=status,
                ))
        return resource_id
    return _add


def published_keys(publisher) -> list[str]:
    return [call.args[0] for call in publisher.publish.await_args_list]
