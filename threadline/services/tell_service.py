from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import List, Literal, Optional

from threadline.schemas.issue import IssueFields, IssueRecord, ThreadMessageRecord, ThreadStats
from threadline.services.ai_service import AIService
from threadline.services.config_service import TrackerConfigService
from threadline.services.duplicate_resolver import DuplicateResolver, Resolution
from threadline.services.issue_store import IssueStore, generate_issue_id
from threadline.services.pipeline import ToolPipeline

logger = logging.getLogger(__name__)

THREAD_CONTEXT_LIMIT = 20
SEARCH_LIMIT = 5
AUTHOR_ROLE = "assistant"


@dataclass
class TellOutcome:
    action: Literal["created", "updated", "rejected", "not_found", "extraction_failed"]
    issue_id: Optional[str] = None
    issue: Optional[IssueRecord] = None
    stats: Optional[ThreadStats] = None
    fields: Optional[IssueFields] = None
    resolution: Optional[Resolution] = None


def virtual_message(content: str) -> ThreadMessageRecord:
    """A synthetic, unsaved thread entry used to evaluate a message before creating an issue."""
    return ThreadMessageRecord(
        id=0,
        issue_id="",
        timestamp=dt.datetime.now(dt.timezone.utc),
        role=AUTHOR_ROLE,
        content=content,
    )


class TellPipeline(ToolPipeline):
    """Create or update one issue from a message.

    Tools: ``search_issues``, ``get_issue``, ``create_issue``, ``update_issue``.
    With an explicit issue id the search is skipped entirely. Without one the
    message is embedded, the nearest issues are handed to the
    DuplicateResolver and exactly one of create/update runs.
    """

    def __init__(
        self,
        store: IssueStore,
        ai: AIService,
        resolver: Optional[DuplicateResolver] = None,
        max_trackable_priority: Optional[int] = None,
    ) -> None:
        super().__init__()
        self.store = store
        self.ai = ai
        self.resolver = resolver or DuplicateResolver(ai)
        self.max_trackable_priority = (
            TrackerConfigService.get_max_trackable_priority()
            if max_trackable_priority is None
            else max_trackable_priority
        )
        self.register("search_issues", self.search_issues)
        self.register("get_issue", self.get_issue)
        self.register("create_issue", self.create_issue)
        self.register("update_issue", self.update_issue)

    async def run(self, message: str, issue_id: Optional[str] = None) -> TellOutcome:
        if issue_id:
            return await self._update(issue_id, message)

        candidates = await self.call_tool("search_issues", query=message)
        resolution = await self.resolver.resolve(message, candidates)
        logger.info(f"Tell routed to {resolution.action} ({resolution.reason})")

        if resolution.action == "update" and resolution.issue_id:
            outcome = await self._update(resolution.issue_id, message)
        else:
            outcome = await self.call_tool("create_issue", message=message)
        outcome.resolution = resolution
        return outcome

    async def _update(self, issue_id: str, message: str) -> TellOutcome:
        existing = await self.call_tool("get_issue", issue_id=issue_id)
        if existing is None:
            return TellOutcome(action="not_found", issue_id=issue_id)
        return await self.call_tool("update_issue", issue=existing, message=message)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def search_issues(self, query: str) -> List[IssueRecord]:
        """Nearest existing issues; an embedding failure means no candidates."""
        embedding = await self.ai.generate_embedding(query)
        if embedding is None:
            return []
        return await self.store.vector_search(embedding, SEARCH_LIMIT)

    async def get_issue(self, issue_id: str) -> Optional[IssueRecord]:
        return await self.store.get(issue_id)

    async def create_issue(self, message: str) -> TellOutcome:
        fields = await self.ai.extract_fields([virtual_message(message)])
        if fields is None:
            return TellOutcome(action="extraction_failed")

        if fields.priority > self.max_trackable_priority:
            logger.info(f"Rejected P{fields.priority} message: {fields.title!r}")
            return TellOutcome(action="rejected", fields=fields)

        issue_id = generate_issue_id()
        await self.store.create_placeholder(issue_id)
        await self.store.append_message(issue_id, AUTHOR_ROLE, message)
        await self.store.replace_fields(issue_id, fields)
        await self._refresh_embedding(issue_id, fields)

        issue = await self.store.get(issue_id)
        if issue is None:
            return TellOutcome(action="not_found", issue_id=issue_id)
        stats = await self.store.thread_stats(issue_id)
        logger.info(f"Created {issue_id} (P{fields.priority} {fields.type})")
        return TellOutcome(action="created", issue_id=issue_id, issue=issue, stats=stats, fields=fields)

    async def update_issue(self, issue: IssueRecord, message: str) -> TellOutcome:
        """Append, then re-derive every field from the recent thread."""
        await self.store.append_message(issue.id, AUTHOR_ROLE, message)

        messages = await self.store.list_messages(issue.id, THREAD_CONTEXT_LIMIT)
        fields = await self.ai.extract_fields(messages, issue.summary or None)
        if fields is not None:
            await self.store.replace_fields(issue.id, fields)
            await self._refresh_embedding(issue.id, fields)
        else:
            logger.warning(f"Extraction failed for {issue.id}; fields left unchanged")

        updated = await self.store.get(issue.id)
        if updated is None:
            return TellOutcome(action="not_found", issue_id=issue.id)
        stats = await self.store.thread_stats(issue.id)
        return TellOutcome(action="updated", issue_id=issue.id, issue=updated, stats=stats, fields=fields)

    async def _refresh_embedding(self, issue_id: str, fields: IssueFields) -> bool:
        """Best-effort: re-embed the fresh summary; keep the old vector on failure."""
        embedding = await self.ai.generate_embedding(fields.summary)
        if embedding is None:
            logger.warning(f"Embedding refresh skipped for {issue_id}")
            return False
        await self.store.replace_embedding(issue_id, embedding)
        return True
