import asyncio
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.clients.whatsapp_gateway import SendResult
from app.db.base_class import Base
from app.schemas.queue import LeadSnapshot
from app.schemas.queue_settings import QueueSettings
from app.services.bulk_operations import BulkOperationsFacade
from app.services.locks import ProjectLocks
from app.services.queue_store import QueueRecordStore
from app.services.settings_service import QueueSettingsService

PROJECT = "proj-1"
OTHER_PROJECT = "proj-2"

# Wednesday, inside 09:00-17:00 UTC
NOW = datetime(2026, 10, 14, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeGateway:
    """Records sends; per-lead results may be a SendResult or an exception to raise."""

    def __init__(self):
        self.calls = []
        self.results = {}
        self.default = SendResult.ok(message_id="wamid.test")
        self.hold = None
        self.delay = 0.0

    async def send(self, lead):
        self.calls.append(lead.lead_id)
        if self.hold is not None:
            await self.hold.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.results.get(lead.lead_id, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def utc_settings(**overrides) -> QueueSettings:
    data = {"working_hours": {"start": "09:00", "end": "17:00", "timezone": "UTC"}}
    data.update(overrides)
    return QueueSettings.load(data)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def locks():
    return ProjectLocks()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def bulk(session_factory, locks, clock):
    return BulkOperationsFacade(session_factory, locks, clock=clock)


async def seed_leads(session_factory, project_id, leads, settings=None):
    """leads: iterable of (lead_id, heat_score) or LeadSnapshot kwargs dicts."""
    async with session_factory() as db:
        store = QueueRecordStore(db)
        for lead in leads:
            if isinstance(lead, dict):
                snapshot = LeadSnapshot(**lead)
            else:
                lead_id, heat_score = lead
                snapshot = LeadSnapshot(lead_id=lead_id, status="new", heat_score=heat_score, phone="+15550100")
            await store.register(project_id, snapshot)
        if settings is not None:
            await QueueSettingsService(db).update(project_id, settings, actor="test")
        await db.commit()


async def load_leads(session_factory, project_id):
    async with session_factory() as db:
        leads = await QueueRecordStore(db).get(project_id)
    return {lead.lead_id: lead for lead in leads}
