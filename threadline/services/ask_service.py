from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from threadline.schemas.issue import IssueRecord, QueryIssuesFilters, ThreadMessageRecord
from threadline.services.ai_service import AIService
from threadline.services.formatting import query_results_payload
from threadline.services.issue_store import IssueStore
from threadline.services.pipeline import ToolPipeline

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 10
NO_ISSUES_MESSAGE = "No issues found."


class AskPipeline(ToolPipeline):
    """Read-only pipeline answering questions over the stored issues.

    Tools: ``search_issues``, ``list_active_issues``, ``get_issue``,
    ``query_issues``. Nothing here mutates the store.
    """

    def __init__(self, store: IssueStore, ai: AIService) -> None:
        super().__init__()
        self.store = store
        self.ai = ai
        self.register("search_issues", self.search_issues)
        self.register("list_active_issues", self.list_active_issues)
        self.register("get_issue", self.get_issue)
        self.register("query_issues", self.query_issues)

    async def ask(self, question: str) -> str:
        baseline = await self.call_tool("list_active_issues")
        hits = await self.call_tool("search_issues", query=question, limit=SEARCH_LIMIT)

        merged: Dict[str, IssueRecord] = {issue.id: issue for issue in baseline}
        for hit in hits:
            merged[hit.id] = hit

        if not merged:
            return NO_ISSUES_MESSAGE

        issues = list(merged.values())
        stats_map = await self.store.thread_stats_batch(merged.keys())
        answer = await self.ai.answer_question(question, issues, stats_map)
        return f"[{len(hits)} issues matched, {len(baseline)} total active]\n{answer}"

    async def get(self, issue_id: str) -> Optional[Tuple[IssueRecord, List[ThreadMessageRecord]]]:
        return await self.call_tool("get_issue", issue_id=issue_id)

    async def query(self, filters: QueryIssuesFilters, search: Optional[str] = None) -> Dict[str, Any]:
        """Compound filter with optional semantic ranking, as a JSON payload."""
        if search:
            embedding = await self.ai.generate_embedding(search)
            if embedding is None:
                logger.warning("Query search embedding failed; running filters only")
            else:
                filters = filters.model_copy(update={"search_embedding": embedding})
        results = await self.call_tool("query_issues", filters=filters)
        return query_results_payload(results)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def search_issues(self, query: str, limit: int = SEARCH_LIMIT) -> List[IssueRecord]:
        embedding = await self.ai.generate_embedding(query)
        if embedding is None:
            return []
        return await self.store.vector_search(embedding, limit)

    async def list_active_issues(self) -> List[IssueRecord]:
        return await self.store.list_non_done()

    async def get_issue(self, issue_id: str) -> Optional[Tuple[IssueRecord, List[ThreadMessageRecord]]]:
        issue = await self.store.get(issue_id)
        if issue is None:
            return None
        return issue, await self.store.list_messages(issue_id)

    async def query_issues(self, filters: QueryIssuesFilters):
        return await self.store.query_issues(filters)
