"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Fakes the voice provider, WhatsApp and Redis.
"""
import random
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool

from leadcall.database import Base
from leadcall.models import Lead, LeadStatus
from leadcall.services.contact import ContactService
from leadcall.services.dispatch import DispatchError, DispatchGateway, DispatchResult
from leadcall.services.messaging import AsyncChannel, ChannelSendError
from leadcall.services.retry_scheduler import BusinessHoursPolicy
from leadcall.workers.contact_sweep import ContactSweep

# Tuesday 10:00 in Sao Paulo (UTC-3)
T0 = datetime(2026, 3, 10, 13, 0, tzinfo=timezone.utc)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class FakeGateway(DispatchGateway):
    """Records dispatches and hands out sequential call handles."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail_with: Exception | None = None
        self._counter = 0

    async def dispatch(self, to, variables):
        self.calls.append((to, dict(variables)))
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        return DispatchResult(call_handle=f"call_{self._counter:04d}")


class FakeChannel(AsyncChannel):
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail_for: set[str] = set()

    async def send(self, to, body):
        if to in self.fail_for:
            raise ChannelSendError("provider rejected")
        self.sent.append((to, body))
        return {"sid": f"SM{len(self.sent):04d}", "status": "queued"}


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


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
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite database for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def mock_redis():
    """Redis stand-in so locks and heartbeats never touch the network."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.eval = AsyncMock(return_value=1)
    redis_mock.ping = AsyncMock(return_value=True)
    with patch("leadcall.utils.locks.get_redis", new=AsyncMock(return_value=redis_mock)):
        yield redis_mock


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def policy():
    return BusinessHoursPolicy()


@pytest.fixture
def contact(gateway, clock, policy):
    return ContactService(gateway, policy=policy, rng=random.Random(7), clock=clock)


@pytest.fixture
def sweep(session_factory, contact, channel):
    return ContactSweep(session_factory, contact, channel)


@pytest.fixture
def lead_factory(db):
    """Insert a committed lead. Status defaults to new."""

    async def _make(**overrides) -> Lead:
        fields = {
            "name": "Maria Silva",
            "phone": "+5511987654321",
            "whatsapp": "+5511987654321",
            "city": "São Paulo",
            "specialty": "cardiologia",
            "timezone": "America/Sao_Paulo",
            "status": LeadStatus.NEW.value,
            "max_attempts": 3,
            "created_at": T0 - timedelta(hours=1),
        }
        fields.update(overrides)
        lead = Lead(**fields)
        db.add(lead)
        await db.commit()
        return lead

    return _make


@pytest.fixture
def dispatch_error():
    return DispatchError("provider returned HTTP 503")
