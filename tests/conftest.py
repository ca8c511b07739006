from __future__ import annotations

import datetime as dt
from typing import AsyncGenerator, Generator, List, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from threadline import db
from threadline.api.issues import get_issue_store
from threadline.main import app
from threadline.schemas.issue import IssueFields, IssueRecord, ThreadStats
from threadline.services.ai_service import AIService
from threadline.services.issue_store import IssueStore
from threadline.services.tracker_service import TrackerService, get_tracker_service

# In-memory SQLite shared across connections of one engine
TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a fresh in-memory database with the schema for each test."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    db.reset_schema_flag()
    await db.ensure_schema(test_engine)
    yield test_engine
    db.reset_schema_flag()
    await test_engine.dispose()


@pytest_asyncio.fixture
async def store(engine: AsyncEngine) -> IssueStore:
    """IssueStore bound to the test database."""
    return IssueStore(engine)


@pytest.fixture
def mock_ai() -> MagicMock:
    """Model collaborators replaced with AsyncMocks that report failure by default."""
    ai = MagicMock(spec=AIService)
    ai.extract_fields = AsyncMock(return_value=None)
    ai.generate_embedding = AsyncMock(return_value=None)
    ai.answer_question = AsyncMock(return_value="An answer.")
    ai.judge_duplicate = AsyncMock(return_value=None)
    return ai


@pytest.fixture
def mock_tracker() -> MagicMock:
    """TrackerService with every entry point mocked."""
    tracker = MagicMock(spec=TrackerService)
    tracker.tell = AsyncMock(return_value='Created wi_test0001: "Test issue"')
    tracker.ask = AsyncMock(return_value="[0 issues matched, 0 total active]\nNothing yet.")
    tracker.get = AsyncMock(return_value="Issue not found: wi_missing")
    tracker.find = AsyncMock(return_value="No similar issues found.")
    tracker.query = AsyncMock(return_value={"count": 0, "issues": []})
    tracker.search = AsyncMock(return_value={"count": 0, "issues": []})
    tracker.list_active = AsyncMock(return_value="No issues found.")
    return tracker


@pytest.fixture
def mock_store() -> MagicMock:
    store = MagicMock(spec=IssueStore)
    store.ensure_schema = AsyncMock()
    store.list_by_status_grouping = AsyncMock(return_value=[])
    store.list_non_done = AsyncMock(return_value=[])
    store.thread_stats_batch = AsyncMock(return_value={})
    store.get = AsyncMock(return_value=None)
    store.list_messages = AsyncMock(return_value=[])
    store.set_status = AsyncMock()
    return store


@pytest.fixture
def client(mock_tracker: MagicMock, mock_store: MagicMock) -> Generator[TestClient, None, None]:
    """Create a test client with the tracker and store replaced by mocks."""
    app.dependency_overrides[get_tracker_service] = lambda: mock_tracker
    app.dependency_overrides[get_issue_store] = lambda: mock_store
    with patch("threadline.main.ensure_schema", new=AsyncMock()):
        with TestClient(app) as test_client:
            yield test_client
    app.dependency_overrides.clear()


def make_fields(**overrides) -> IssueFields:
    data = {
        "title": "Add rate limiting to memory API",
        "type": "feature",
        "status": "open",
        "priority": 2,
        "labels": ["api", "rate-limiting", "backend"],
        "summary": "Add per-client rate limiting to the memory API. Nothing started yet.",
    }
    data.update(overrides)
    return IssueFields(**data)


def make_issue(
    issue_id: str = "wi_test0001",
    similarity: Optional[float] = None,
    labels: Optional[List[str]] = None,
    **overrides,
) -> IssueRecord:
    now = dt.datetime(2025, 1, 15, 12, 0, tzinfo=dt.timezone.utc)
    data = {
        "id": issue_id,
        "title": "Add rate limiting to memory API",
        "type": "feature",
        "status": "open",
        "priority": 2,
        "labels": ["api", "backend"] if labels is None else labels,
        "summary": "Rate limiting for the memory API.",
        "created_at": now,
        "updated_at": now,
        "similarity": similarity,
    }
    data.update(overrides)
    return IssueRecord(**data)


def make_stats(message_count: int = 1, total_chars: int = 50) -> ThreadStats:
    return ThreadStats(message_count=message_count, total_chars=total_chars)


def unit_vector(index: int, dimensions: int = 8) -> List[float]:
    vector = [0.0] * dimensions
    vector[index] = 1.0
    return vector
