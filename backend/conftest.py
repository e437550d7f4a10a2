"""
Global pytest configuration and fixtures.
"""

import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh in-memory database for each test."""
    from conversation_scheduler.core.database import Base
    import conversation_scheduler.models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine, monkeypatch):
    """Session factory bound to the test engine, also installed as the global one."""
    import conversation_scheduler.core.database

    factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(conversation_scheduler.core.database, "AsyncSessionLocal", factory)
    return factory


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(session_factory):
    from conversation_scheduler.services.conversation_store import ConversationStore

    return ConversationStore(session_factory=session_factory)


@pytest_asyncio.fixture
async def test_organization(db_session: AsyncSession):
    """Create a test organization."""
    from conversation_scheduler.models.organization import Organization

    org = Organization(name="Test Organization", slug="test-org", is_active=True)
    db_session.add(org)
    await db_session.commit()
    await db_session.refresh(org)
    return org


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession):
    """Create a human agent."""
    from conversation_scheduler.models.user import User

    user = User(email="agent@example.com", name="Support Agent", is_active=True)
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
def make_conversation(session_factory, test_organization):
    """
    Factory creating a conversation with the given field values.

    ``customer_message_age_ms`` adds a customer message sent that long ago;
    ``messages`` is a list of ``(type, age_ms)`` pairs appended in order.
    """
    from conversation_scheduler.models.conversation import Conversation
    from conversation_scheduler.models.message import Message, MessageType
    from conversation_scheduler.utils.dates import utcnow

    async def _make(
        customer_message_age_ms: Optional[int] = None,
        messages: Optional[List[tuple]] = None,
        **fields
    ):
        now = utcnow()
        fields.setdefault("organization_id", test_organization.id)
        fields.setdefault("title", "Test conversation")

        async with session_factory() as session:
            conversation = Conversation(**fields)
            session.add(conversation)
            await session.flush()

            history = list(messages or [])
            if customer_message_age_ms is not None:
                history.append((MessageType.CUSTOMER, customer_message_age_ms))

            for message_type, age_ms in history:
                session.add(Message(
                    conversation_id=conversation.id,
                    content="Is anyone there?",
                    type=MessageType(message_type).value,
                    sender="customer" if message_type == MessageType.CUSTOMER else "agent",
                    created_at=now - timedelta(milliseconds=age_ms),
                ))

            await session.commit()
            await session.refresh(conversation)
            return conversation

    return _make


class RecordingEventsService:
    """Stands in for ConversationEventsService and records what was published."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    async def publish_status_changed(self, conversation, changed_fields=None):
        if self.fail:
            raise RuntimeError("event bus unavailable")
        self.published.append((conversation.id, conversation.status, changed_fields))


@pytest.fixture
def events():
    return RecordingEventsService()


@pytest.fixture
def failing_events():
    return RecordingEventsService(fail=True)


@pytest.fixture
def client():
    """Create a test client."""
    from main import app

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
