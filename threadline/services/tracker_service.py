from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from threadline.schemas.issue import QueryIssuesFilters
from threadline.services.ai_service import AIService, create_ai_service
from threadline.services.ask_service import AskPipeline
from threadline.services.formatting import (
    format_find_results,
    format_issue_confirmation,
    format_issue_detail,
    format_issue_list,
    format_low_priority_rejection,
    search_results_payload,
)
from threadline.services.issue_store import IssueStore
from threadline.services.tell_service import TellOutcome, TellPipeline

logger = logging.getLogger(__name__)

FIND_LIMIT = 5
EXTRACTION_FAILED_MESSAGE = "Could not extract issue details. Please provide more context."


class TrackerService:
    """The entry points callers use: tell, ask, get, find and query, plus the
    list_active and search views for chat and dashboard callers.

    Each call builds a fresh pipeline, makes sure the schema exists, and turns
    any unexpected exception into an error string so callers always receive a
    renderable reply.
    """

    def __init__(self, store: Optional[IssueStore] = None, ai: Optional[AIService] = None) -> None:
        self.store = store or IssueStore()
        self.ai = ai or create_ai_service()

    def tell_pipeline(self) -> TellPipeline:
        return TellPipeline(self.store, self.ai)

    def ask_pipeline(self) -> AskPipeline:
        return AskPipeline(self.store, self.ai)

    async def tell(self, message: str, issue_id: Optional[str] = None) -> str:
        try:
            await self.store.ensure_schema()
            outcome = await self.tell_pipeline().run(message, issue_id)
            return render_tell_outcome(outcome)
        except Exception as e:
            logger.exception("tell failed")
            return f"Error processing message: {e}"

    async def ask(self, question: str) -> str:
        try:
            await self.store.ensure_schema()
            return await self.ask_pipeline().ask(question)
        except Exception as e:
            logger.exception("ask failed")
            return f"Error answering question: {e}"

    async def get(self, issue_id: str) -> str:
        try:
            await self.store.ensure_schema()
            found = await self.ask_pipeline().get(issue_id)
            if found is None:
                return f"Issue not found: {issue_id}"
            issue, messages = found
            return format_issue_detail(issue, messages)
        except Exception as e:
            logger.exception("get failed")
            return f"Error retrieving issue: {e}"

    async def find(self, message: str, limit: int = FIND_LIMIT) -> str:
        """Semantic lookup only; never creates or updates anything."""
        try:
            await self.store.ensure_schema()
            embedding = await self.ai.generate_embedding(message)
            if embedding is None:
                return "Could not generate embedding for search."
            results = await self.store.vector_search(embedding, limit)
            if not results:
                return "No similar issues found."
            return format_find_results(results)
        except Exception as e:
            logger.exception("find failed")
            return f"Error searching issues: {e}"

    async def search(self, query: str, limit: int = FIND_LIMIT) -> Dict[str, Any]:
        """Semantic lookup as a JSON payload with integer-percent similarity."""
        try:
            await self.store.ensure_schema()
            results = await self.ask_pipeline().call_tool("search_issues", query=query, limit=limit)
            return {"count": len(results), "issues": search_results_payload(results)}
        except Exception as e:
            logger.exception("search failed")
            return {"error": f"Error searching issues: {e}", "count": 0, "issues": []}

    async def list_active(self) -> str:
        """Open and active issues, one block each."""
        try:
            await self.store.ensure_schema()
            return format_issue_list(await self.ask_pipeline().call_tool("list_active_issues"))
        except Exception as e:
            logger.exception("list failed")
            return f"Error listing issues: {e}"

    async def query(self, filters: QueryIssuesFilters, search: Optional[str] = None) -> Dict[str, Any]:
        try:
            await self.store.ensure_schema()
            return await self.ask_pipeline().query(filters, search)
        except Exception as e:
            logger.exception("query failed")
            return {"error": f"Error querying issues: {e}", "count": 0, "issues": []}


def render_tell_outcome(outcome: TellOutcome) -> str:
    if outcome.action == "not_found":
        return f"Issue not found: {outcome.issue_id}"
    if outcome.action == "extraction_failed":
        return EXTRACTION_FAILED_MESSAGE
    if outcome.action == "rejected":
        return format_low_priority_rejection(outcome.fields)
    action = "Created" if outcome.action == "created" else "Updated"
    return format_issue_confirmation(outcome.issue, action, outcome.stats)


_tracker_service: Optional[TrackerService] = None


def get_tracker_service() -> TrackerService:
    """FastAPI dependency returning the process-wide tracker service."""
    global _tracker_service
    if _tracker_service is None:
        _tracker_service = TrackerService()
    return _tracker_service
