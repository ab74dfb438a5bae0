"""
Test configuration and fixtures.
Uses file-backed SQLite per test (several short sessions share one database).
Mocks all external services: Redis, Twilio and the alert webhook.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["JOURNEY_BACKEND"] = "memory"
os.environ["API_KEY"] = ""
os.environ["ALERT_WEBHOOK_URL"] = ""

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from journeyflow.database import Base
from journeyflow.models.contact import Contact
from journeyflow.models.lead import Lead
import journeyflow.models  # noqa: F401  (registers every table on Base.metadata)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def session_factory(tmp_path):
    """SQLite database shared by every session the test opens."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'journeyflow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def create_lead(session_factory):
    """
    Insert a lead with contacts. Default: one WhatsApp contact with opt-in.
    Returns (lead, [contacts]).
    """
    async def _create(contacts=None, name="Asha Rao"):
        specs = contacts if contacts is not None else [{
            "name": "Asha",
            "phone": "+919812345678",
            "preferred_channel": "whatsapp",
            "whatsapp_opt_in": True,
        }]
        async with session_factory() as session:
            lead = Lead(name=name, source="manual", locality="Bengaluru")
            session.add(lead)
            await session.flush()
            created = []
            for spec in specs:
                contact = Contact(lead_id=lead.id, **spec)
                session.add(contact)
                created.append(contact)
            await session.commit()
        return lead, created

    return _create


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("journeyflow.utils.redis_client.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.eval = AsyncMock(return_value=1)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def mock_alert():
    """Mock for send_alert - prevents webhook posts and Redis cooldown checks."""
    with patch("journeyflow.utils.alerting.send_alert", new_callable=AsyncMock) as mock:
        yield mock
