from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from threadline.api.auth import require_dashboard_session
from threadline.errors import IssueNotFoundError
from threadline.schemas.issue import ISSUE_STATUSES
from threadline.schemas.requests import QUESTION_MAX_LENGTH, StatusUpdateRequest, TellRequest
from threadline.services.formatting import (
    active_issues_payload,
    dashboard_issues_payload,
    issue_summary_payload,
)
from threadline.services.issue_store import IssueStore
from threadline.services.tracker_service import TrackerService, get_tracker_service

router = APIRouter(
    prefix="/api/issues",
    tags=["Issues"],
    dependencies=[Depends(require_dashboard_session)],
)

_issue_store: Optional[IssueStore] = None


def get_issue_store() -> IssueStore:
    global _issue_store
    if _issue_store is None:
        _issue_store = IssueStore()
    return _issue_store


@router.get("")
async def list_issues(store: IssueStore = Depends(get_issue_store)) -> Dict[str, Any]:
    """All issues grouped by status (active, open, done, archived), each by priority."""
    await store.ensure_schema()
    issues = await store.list_by_status_grouping()
    stats_map = await store.thread_stats_batch(issue.id for issue in issues)
    data = dashboard_issues_payload(issues, stats_map)

    groups: Dict[str, list] = {status: [] for status in ("active", "open", "done", "archived")}
    for item in data:
        groups.setdefault(item["status"], []).append(item)
    return {"count": len(data), "groups": groups}


@router.get("/active")
async def list_active_issues(store: IssueStore = Depends(get_issue_store)) -> Dict[str, Any]:
    """Open and active issues, active first, most recently updated first."""
    await store.ensure_schema()
    issues = await store.list_non_done()
    return {"count": len(issues), "issues": active_issues_payload(issues)}


@router.get("/search")
async def search_issues(
    q: str = Query(..., min_length=1, max_length=QUESTION_MAX_LENGTH),
    limit: int = Query(5, ge=1, le=20),
    tracker: TrackerService = Depends(get_tracker_service),
) -> Dict[str, Any]:
    return await tracker.search(q, limit)


@router.get("/{issue_id}")
async def get_issue(issue_id: str, store: IssueStore = Depends(get_issue_store)) -> Dict[str, Any]:
    await store.ensure_schema()
    issue = await store.get(issue_id)
    if issue is None:
        raise HTTPException(status_code=404, detail=f"Issue not found: {issue_id}")

    messages = await store.list_messages(issue_id)
    return {
        **issue_summary_payload(issue),
        "labels": issue.labels,
        "created_at": issue.created_at.isoformat(),
        "updated_at": issue.updated_at.isoformat(),
        "thread": [
            {
                "id": m.id,
                "role": m.role,
                "content": m.content,
                "timestamp": m.timestamp.isoformat(),
            }
            for m in messages
        ],
    }


@router.post("/{issue_id}/status")
async def update_status(
    issue_id: str,
    request: StatusUpdateRequest,
    store: IssueStore = Depends(get_issue_store),
) -> Dict[str, Any]:
    """Manual status control; bypasses extraction."""
    if request.status not in ISSUE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {request.status}")

    await store.ensure_schema()
    try:
        await store.set_status(issue_id, request.status)
    except IssueNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"id": issue_id, "status": request.status}


@router.post("/tell")
async def tell(
    request: TellRequest,
    tracker: TrackerService = Depends(get_tracker_service),
) -> Dict[str, Any]:
    result = await tracker.tell(request.message, request.issue_id)
    return {"result": result}
