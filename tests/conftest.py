"""
Shared fixtures: a throwaway SQLite ledger per test, a recording alert
dispatcher, and an HTTP client wired to both.
"""
import os
import tempfile
import uuid

# Settings are read at import time; point them at disposable infrastructure
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{tempfile.mkdtemp()}/unused.db"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.pop("SENTRY_DSN", None)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from flowcredits.database import get_db
from flowcredits.dependencies.ledger import get_tenant_locks
from flowcredits.main import app
from flowcredits.models.base import Base
from flowcredits.models.credit import ClientBalance, CreditTransaction  # noqa: F401
from flowcredits.models.notification import NotificationDelivery  # noqa: F401
from flowcredits.models.payment import Payment, PaymentMethod, PaymentStatus  # noqa: F401
from flowcredits.models.reservation import Reservation  # noqa: F401
from flowcredits.models.tenant import Tenant
from flowcredits.services.alert_service import AlertDispatcher, get_alert_dispatcher
from flowcredits.services.credit_service import CreditService
from flowcredits.services.jwt_service import JWTService
from flowcredits.services.payment_gateway import SIGNATURE_HEADER, sign_payload
from flowcredits.services.tenant_lock import TenantLockRegistry


class RecordingDispatcher(AlertDispatcher):
    """Keeps evaluations instead of sending them anywhere."""

    def __init__(self):
        self.evaluations = []

    async def dispatch(self, evaluation):
        self.evaluations.append(evaluation)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/ledger.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def locks():
    return TenantLockRegistry(timeout=5.0)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def make_service(locks, dispatcher):
    def factory(session):
        return CreditService(session, locks=locks, dispatcher=dispatcher)
    return factory


@pytest.fixture
def service(db, make_service):
    return make_service(db)


@pytest_asyncio.fixture
async def make_tenant(session_maker):
    # Own session, so rollbacks in the service session never expire it
    async def factory(name="Acme Corp"):
        async with session_maker() as session:
            tenant = Tenant(id=str(uuid.uuid4()), name=name)
            session.add(tenant)
            await session.commit()
        return tenant
    return factory


@pytest_asyncio.fixture
async def tenant(make_tenant):
    return await make_tenant()


@pytest.fixture
def fund(service):
    """Buy credits and confirm the payment; returns the purchase result."""
    async def _fund(tenant_id, quantity, method=PaymentMethod.INVOICE):
        result = await service.purchase_credits(tenant_id, quantity, payment_method=method)
        await service.confirm_payment(result.payment.id, PaymentStatus.COMPLETED)
        return result
    return _fund


@pytest.fixture
def auth_headers():
    def _headers(tenant_id, role="admin", subject="user-1"):
        token = JWTService().create_token(subject, tenant_id, role)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def signed():
    """Body and headers for a payment gateway callback."""
    def _signed(payload: bytes, secret=None):
        return {"Content-Type": "application/json", SIGNATURE_HEADER: sign_payload(payload, secret)}
    return _signed


@pytest_asyncio.fixture
async def client(session_maker, locks, dispatcher):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_tenant_locks] = lambda: locks
    app.dependency_overrides[get_alert_dispatcher] = lambda: dispatcher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
