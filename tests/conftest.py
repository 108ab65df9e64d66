"""Pytest configuration and fixtures.

Provides common fixtures for all tests including:
- Database engine and sessions (in-memory SQLite)
- Test users and authentication headers
- A recording workflow queue
- Graph builders
"""

import os

os.environ.setdefault("ENCRYPTION_KEY", "test-master-secret-that-is-at-least-32-chars")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")

from typing import Any, AsyncGenerator  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from chainly.api.deps import create_access_token, get_db_session  # noqa: E402
from chainly.config import settings  # noqa: E402
from chainly.core.encryption import CredentialEncryption  # noqa: E402
from chainly.core.rate_limit import RateLimiter  # noqa: E402
from chainly.core.realtime import NodeStatusEvent, StatusPublisher  # noqa: E402
from chainly.main import app  # noqa: E402
from chainly.models.node import Connection, Node, NodeType  # noqa: E402
from chainly.models.user import User  # noqa: E402
from chainly.models.workflow import Workflow  # noqa: E402

# Test database URL (uses SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite://"


class RecordingQueue:
    """WorkflowQueue that records runs instead of enqueueing them."""

    def __init__(self) -> None:
        self.runs: list[dict[str, Any]] = []

    async def enqueue_run(
        self,
        run_id: str,
        workflow_id: str,
        trigger_node_id: str | None = None,
        initial_context: dict[str, Any] | None = None,
    ) -> str:
        self.runs.append(
            {
                "run_id": run_id,
                "workflow_id": workflow_id,
                "trigger_node_id": trigger_node_id,
                "initial_context": initial_context,
            }
        )
        return run_id


class RecordingPublisher:
    """Status sink that keeps every published event."""

    def __init__(self) -> None:
        self.events: list[NodeStatusEvent] = []

    async def publish(self, event: NodeStatusEvent) -> None:
        self.events.append(event)

    def statuses(self) -> list[tuple[str, str]]:
        return [(e.node_id, e.status.value) for e in self.events]


@pytest_asyncio.fixture
async def db_engine():
    """Create async database engine shared by every session of a test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> sessionmaker:
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest_asyncio.fixture
async def client(session_maker, queue: RecordingQueue) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client.

    The lifespan does not run under ASGITransport, so the app-scoped
    resources it would create are set here.
    """

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.state.rate_limiter = RateLimiter(limit=100, window_seconds=60)
    app.state.status_publisher = StatusPublisher()
    app.state.workflow_queue = queue

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user."""
    user = User(
        id=str(uuid4()),
        username=f"user-{uuid4().hex[:8]}",
        email="test@example.com",
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
def test_user_token(test_user: User) -> str:
    """Create an access token for test user."""
    return create_access_token(test_user.id)


@pytest.fixture
def auth_headers(test_user_token: str) -> dict[str, str]:
    """Create authentication headers."""
    return {"Authorization": f"Bearer {test_user_token}"}


@pytest.fixture
def encryption() -> CredentialEncryption:
    """Create encryption instance keyed by the test master secret."""
    return CredentialEncryption(settings.encryption_key.get_secret_value())


@pytest.fixture
def make_workflow(db_session: AsyncSession, test_user: User):
    """Persist a workflow graph.

    Nodes are ``(id, type, data)`` tuples in declaration order; edges are
    ``(source, target)`` pairs.
    """

    async def _make(
        nodes: list[tuple[str, NodeType, dict[str, Any]]],
        edges: list[tuple[str, str]] = (),
        user_id: str | None = None,
    ) -> Workflow:
        workflow = Workflow(name="Test Workflow", user_id=user_id or test_user.id)
        db_session.add(workflow)
        await db_session.flush()

        for index, (node_id, node_type, data) in enumerate(nodes):
            db_session.add(
                Node(
                    id=node_id,
                    workflow_id=workflow.id,
                    type=node_type,
                    sort_order=index,
                    data=data,
                )
            )
        for source, target in edges:
            db_session.add(
                Connection(workflow_id=workflow.id, from_node_id=source, to_node_id=target)
            )

        await db_session.commit()
        await db_session.refresh(workflow)
        return workflow

    return _make
