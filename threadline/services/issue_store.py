from __future__ import annotations

import logging
import math
import secrets
import string
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.dialects.postgresql import array
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.types import Text

from threadline import db
from threadline.errors import IssueNotFoundError
from threadline.models.issue import Issue
from threadline.models.thread_message import ThreadMessage
from threadline.schemas.issue import (
    IssueFields,
    IssueRecord,
    IssueStatus,
    QueryIssueResult,
    QueryIssuesFilters,
    Role,
    ThreadMessageRecord,
    ThreadStats,
)

logger = logging.getLogger(__name__)

QUERY_ISSUES_LIMIT = 25
LAST_MESSAGE_PREVIEW_CHARS = 500
ISSUE_ID_PREFIX = "wi_"
_ID_ALPHABET = string.ascii_letters + string.digits

STATUS_RANK = {"active": 0, "open": 1, "done": 2, "archived": 3}


def generate_issue_id() -> str:
    """Return a new opaque issue id such as ``wi_a3Kx9QzB``."""
    return ISSUE_ID_PREFIX + "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _latest_message(column):
    """Correlated subquery selecting *column* from the issue's newest message."""
    return (
        select(column)
        .where(ThreadMessage.issue_id == Issue.id)
        .order_by(ThreadMessage.timestamp.desc(), ThreadMessage.id.desc())
        .limit(1)
        .correlate(Issue)
        .scalar_subquery()
    )


def _issue_columns(include_embedding: bool = False) -> list:
    columns = [
        Issue.id,
        Issue.title,
        Issue.type,
        Issue.status,
        Issue.priority,
        Issue.labels,
        Issue.summary,
        Issue.created_at,
        Issue.updated_at,
        _latest_message(ThreadMessage.role).label("last_message_by"),
    ]
    if include_embedding:
        columns.append(Issue.embedding)
    return columns


def _status_rank():
    return case(STATUS_RANK, value=Issue.status, else_=len(STATUS_RANK))


def vector_search_statement(vector: Sequence[float], limit: int):
    """pgvector nearest-neighbour select ordered by ``<=>`` cosine distance."""
    distance = Issue.embedding.cosine_distance(list(vector))
    return (
        select(*_issue_columns(), (1 - distance).label("similarity"))
        .where(Issue.embedding.isnot(None))
        .order_by(distance)
        .limit(limit)
    )


def labels_match(labels: List[str], pgvector: bool):
    """Condition true when the issue carries any of *labels*."""
    if pgvector:
        return func.jsonb_exists_any(Issue.labels, array(labels, type_=Text))
    each = func.json_each(Issue.labels).table_valued("value")
    return select(literal(1)).select_from(each).where(each.c.value.in_(labels)).exists()


def query_issues_statement(filters: QueryIssuesFilters, pgvector: bool):
    """Compound filter select with thread stats and last-message columns.

    On SQLite a search embedding only adds the raw embedding column; scoring,
    ordering and the row cap happen in Python.
    """
    message_count = (
        select(func.count(ThreadMessage.id))
        .where(ThreadMessage.issue_id == Issue.id)
        .correlate(Issue)
        .scalar_subquery()
    )
    total_chars = (
        select(func.coalesce(func.sum(func.length(ThreadMessage.content)), 0))
        .where(ThreadMessage.issue_id == Issue.id)
        .correlate(Issue)
        .scalar_subquery()
    )
    last_role = _latest_message(ThreadMessage.role)

    columns = [
        Issue.id,
        Issue.title,
        Issue.type,
        Issue.status,
        Issue.priority,
        Issue.labels,
        Issue.summary,
        Issue.created_at,
        Issue.updated_at,
        last_role.label("last_message_by"),
        message_count.label("message_count"),
        total_chars.label("total_chars"),
        _latest_message(ThreadMessage.role).label("last_message_role"),
        _latest_message(
            func.substr(ThreadMessage.content, 1, LAST_MESSAGE_PREVIEW_CHARS)
        ).label("last_message_content"),
        _latest_message(ThreadMessage.timestamp).label("last_message_timestamp"),
    ]

    conditions = []
    if filters.status is not None:
        statuses = filters.status if isinstance(filters.status, list) else [filters.status]
        conditions.append(Issue.status.in_(statuses))
    if filters.type is not None:
        types = filters.type if isinstance(filters.type, list) else [filters.type]
        conditions.append(Issue.type.in_(types))
    if filters.priority_max is not None:
        conditions.append(Issue.priority <= filters.priority_max)
    if filters.labels:
        conditions.append(labels_match(filters.labels, pgvector))
    if filters.last_message_by is not None:
        conditions.append(last_role == filters.last_message_by)
    if filters.min_messages is not None:
        conditions.append(message_count >= filters.min_messages)
    if filters.max_messages is not None:
        conditions.append(message_count <= filters.max_messages)

    search = filters.search_embedding or None
    if search is None:
        return (
            select(*columns)
            .where(*conditions)
            .order_by(Issue.priority.asc(), Issue.updated_at.desc())
            .limit(QUERY_ISSUES_LIMIT)
        )

    conditions.append(Issue.embedding.isnot(None))
    if not pgvector:
        return select(*columns, Issue.embedding).where(*conditions)

    similarity = (1 - Issue.embedding.cosine_distance(list(search))).label("similarity")
    return (
        select(*columns, similarity)
        .where(*conditions)
        .order_by(similarity.desc().nulls_last())
        .limit(QUERY_ISSUES_LIMIT)
    )


class IssueStore:
    """Async persistence for issues, their embeddings and message threads.

    Every method runs in its own short transaction; there is no cross-call
    locking, so concurrent ``replace_fields`` calls are last-write-wins.
    """

    def __init__(self, engine: Optional[AsyncEngine] = None) -> None:
        self._engine = engine
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        if engine is not None:
            self._session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = db.get_engine()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = db.get_session_factory()
        return self._session_factory

    async def ensure_schema(self) -> None:
        """Create tables on first use; later calls return immediately."""
        await db.ensure_schema(self.engine)

    @staticmethod
    def _uses_pgvector(session: AsyncSession) -> bool:
        return session.bind.dialect.name == "postgresql"

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    async def create_placeholder(self, issue_id: str) -> None:
        """Insert a new issue with default fields, before any extraction runs."""
        async with self.session_factory() as session:
            session.add(
                Issue(
                    id=issue_id,
                    title="New issue",
                    type="task",
                    status="open",
                    priority=3,
                    labels=[],
                    summary="",
                )
            )
            await session.commit()

    async def get(self, issue_id: str) -> Optional[IssueRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(*_issue_columns(include_embedding=True)).where(Issue.id == issue_id)
            )
            row = result.mappings().first()
        return IssueRecord.from_row(row) if row else None

    async def replace_fields(self, issue_id: str, fields: IssueFields) -> None:
        """Overwrite all extracted fields at once and bump updated_at."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Issue)
                .where(Issue.id == issue_id)
                .values(
                    title=fields.title,
                    type=fields.type,
                    status=fields.status,
                    priority=fields.priority,
                    labels=list(fields.labels),
                    summary=fields.summary,
                    updated_at=func.now(),
                )
            )
            if result.rowcount == 0:
                raise IssueNotFoundError(issue_id)
            await session.commit()

    async def replace_embedding(self, issue_id: str, vector: Sequence[float]) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Issue).where(Issue.id == issue_id).values(embedding=list(vector))
            )
            await session.commit()

    async def set_status(self, issue_id: str, status: IssueStatus) -> None:
        """Set status directly, bypassing extraction (manual control path)."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Issue)
                .where(Issue.id == issue_id)
                .values(status=status, updated_at=func.now())
            )
            if result.rowcount == 0:
                raise IssueNotFoundError(issue_id)
            await session.commit()

    async def list_by_status_grouping(self) -> List[IssueRecord]:
        """All issues: active, open, done, archived; each group by priority."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(*_issue_columns()).order_by(_status_rank(), Issue.priority.asc(), Issue.id)
            )
            rows = result.mappings().all()
        return [IssueRecord.from_row(row) for row in rows]

    async def list_non_done(self) -> List[IssueRecord]:
        """Open and active issues, active first, each bucket most recent first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(*_issue_columns())
                .where(Issue.status.in_(("open", "active")))
                .order_by(_status_rank(), Issue.updated_at.desc(), Issue.id)
            )
            rows = result.mappings().all()
        return [IssueRecord.from_row(row) for row in rows]

    async def vector_search(self, vector: Sequence[float], limit: int = 10) -> List[IssueRecord]:
        """Nearest issues by cosine similarity; issues without embedding are skipped."""
        async with self.session_factory() as session:
            if self._uses_pgvector(session):
                result = await session.execute(vector_search_statement(vector, limit))
                return [IssueRecord.from_row(row) for row in result.mappings().all()]

            result = await session.execute(
                select(*_issue_columns(include_embedding=True)).where(Issue.embedding.isnot(None))
            )
            rows = result.mappings().all()

        scored = []
        for row in rows:
            data = dict(row)
            data["similarity"] = cosine_similarity(vector, data.pop("embedding"))
            scored.append(data)
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return [IssueRecord.from_row(row) for row in scored[:limit]]

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def append_message(self, issue_id: str, role: Role, content: str) -> ThreadMessageRecord:
        """Append to the issue's thread. Raises IssueNotFoundError for unknown ids."""
        async with self.session_factory() as session:
            if await session.get(Issue, issue_id) is None:
                raise IssueNotFoundError(issue_id)
            message = ThreadMessage(issue_id=issue_id, role=role, content=content)
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return ThreadMessageRecord.model_validate(message)

    async def list_messages(self, issue_id: str, limit: Optional[int] = None) -> List[ThreadMessageRecord]:
        """Thread in chronological order; with *limit*, only the last N messages."""
        async with self.session_factory() as session:
            stmt = select(ThreadMessage).where(ThreadMessage.issue_id == issue_id)
            if limit:
                stmt = stmt.order_by(ThreadMessage.timestamp.desc(), ThreadMessage.id.desc()).limit(limit)
            else:
                stmt = stmt.order_by(ThreadMessage.timestamp.asc(), ThreadMessage.id.asc())
            result = await session.execute(stmt)
            messages = [ThreadMessageRecord.model_validate(m) for m in result.scalars().all()]
        if limit:
            messages.reverse()
        return messages

    async def thread_stats(self, issue_id: str) -> ThreadStats:
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    func.count(ThreadMessage.id).label("message_count"),
                    func.coalesce(func.sum(func.length(ThreadMessage.content)), 0).label("total_chars"),
                ).where(ThreadMessage.issue_id == issue_id)
            )
            row = result.mappings().one()
        return ThreadStats(message_count=row["message_count"], total_chars=row["total_chars"])

    async def thread_stats_batch(self, issue_ids: Iterable[str]) -> Dict[str, ThreadStats]:
        """Stats for many issues in one query. Issues without messages are absent."""
        ids = list(issue_ids)
        if not ids:
            return {}

        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    ThreadMessage.issue_id,
                    func.count(ThreadMessage.id).label("message_count"),
                    func.coalesce(func.sum(func.length(ThreadMessage.content)), 0).label("total_chars"),
                )
                .where(ThreadMessage.issue_id.in_(ids))
                .group_by(ThreadMessage.issue_id)
            )
            rows = result.mappings().all()

        return {
            row["issue_id"]: ThreadStats(message_count=row["message_count"], total_chars=row["total_chars"])
            for row in rows
        }

    # ------------------------------------------------------------------
    # Compound query
    # ------------------------------------------------------------------

    async def query_issues(self, filters: QueryIssuesFilters) -> List[QueryIssueResult]:
        """Filter issues and annotate each with thread stats and a last-message preview."""
        search = filters.search_embedding or None
        async with self.session_factory() as session:
            pgvector = self._uses_pgvector(session)
            result = await session.execute(query_issues_statement(filters, pgvector))
            rows = [dict(row) for row in result.mappings().all()]

        if search is not None and not pgvector:
            for row in rows:
                row["similarity"] = cosine_similarity(search, row.pop("embedding"))
            rows.sort(key=lambda r: r["similarity"], reverse=True)
            rows = rows[:QUERY_ISSUES_LIMIT]

        return [QueryIssueResult.from_row(row) for row in rows]
