from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import ValidationError

from threadline.schemas.requests import (
    ISSUE_ID_MAX_LENGTH,
    MESSAGE_MAX_LENGTH,
    QUESTION_MAX_LENGTH,
    AskRequest,
    FindRequest,
    GetRequest,
    QueryRequest,
    TellRequest,
    ToolCallRequest,
)
from threadline.services.config_service import TrackerConfigService
from threadline.services.tracker_service import TrackerService, get_tracker_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tools", tags=["Tools"])


TOOLS: List[Dict[str, Any]] = [
    {
        "name": "track_tell",
        "description": (
            "Tell the tracker about work being done, decisions made, or problems found. "
            "Creates a new issue or updates an existing one. Without issue_id the tracker "
            "searches for a duplicate and appends to it when one is found; with issue_id the "
            "message is appended to that issue. Fields are re-derived from the full thread. "
            "Each call handles ONE issue. Priority 5 (negligible) items are rejected."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "message": {
                    "type": "string",
                    "maxLength": MESSAGE_MAX_LENGTH,
                    "description": "Work done, a decision, a problem found, or a status update",
                },
                "issue_id": {
                    "type": "string",
                    "maxLength": ISSUE_ID_MAX_LENGTH,
                    "description": "Existing issue ID to update (e.g. wi_a3Kx9QzB)",
                },
            },
            "required": ["message"],
        },
    },
    {
        "name": "track_ask",
        "description": (
            "Ask a natural language question about tracked issues. The answer is grounded "
            "in stored issue data and cites issue IDs. Read-only."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "question": {"type": "string", "maxLength": QUESTION_MAX_LENGTH},
            },
            "required": ["question"],
        },
    },
    {
        "name": "track_get",
        "description": "Retrieve one issue with its full message thread.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "maxLength": ISSUE_ID_MAX_LENGTH},
            },
            "required": ["id"],
        },
    },
    {
        "name": "track_find",
        "description": "List issues semantically similar to a message, without changing anything.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "message": {"type": "string", "maxLength": MESSAGE_MAX_LENGTH},
                "limit": {"type": "integer", "minimum": 1, "maximum": 20, "default": 5},
            },
            "required": ["message"],
        },
    },
    {
        "name": "track_query",
        "description": (
            "Filter issues by status, type, priority, labels, last speaker and thread size, "
            "optionally ranked by semantic similarity to a search text. Returns JSON."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "status": {"type": ["string", "array"]},
                "type": {"type": ["string", "array"]},
                "priority_max": {"type": "integer", "minimum": 1, "maximum": 5},
                "last_message_by": {"type": "string", "enum": ["user", "assistant", "system"]},
                "labels": {"type": "array", "items": {"type": "string"}},
                "min_messages": {"type": "integer", "minimum": 0},
                "max_messages": {"type": "integer", "minimum": 0},
                "search": {"type": "string", "maxLength": QUESTION_MAX_LENGTH},
            },
        },
    },
]


def require_tracker_token(authorization: Optional[str] = Header(None)) -> None:
    """Bearer-token check for tool callers."""
    expected = TrackerConfigService.get_tracker_token()
    if not expected:
        raise HTTPException(status_code=503, detail="Tool transport not configured")

    token = ""
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    if not token or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing bearer token")


def _text(content: Any) -> Dict[str, Any]:
    if not isinstance(content, str):
        content = json.dumps(content, indent=2, default=str)
    return {"content": [{"type": "text", "text": content}]}


@router.post("/list", dependencies=[Depends(require_tracker_token)])
async def list_tools() -> Dict[str, Any]:
    return {"tools": TOOLS}


@router.post("/call", dependencies=[Depends(require_tracker_token)])
async def call_tool(
    request: ToolCallRequest,
    tracker: TrackerService = Depends(get_tracker_service),
) -> Dict[str, Any]:
    """Dispatch a tool call; results are wrapped as a single text content block."""
    args = request.arguments
    try:
        if request.name == "track_tell":
            tell = TellRequest(**args)
            return _text(await tracker.tell(tell.message, tell.issue_id))
        if request.name == "track_ask":
            ask = AskRequest(**args)
            return _text(await tracker.ask(ask.question))
        if request.name == "track_get":
            get = GetRequest(issue_id=args.get("id", ""))
            return _text(await tracker.get(get.issue_id))
        if request.name == "track_find":
            find = FindRequest(**args)
            return _text(await tracker.find(find.message, find.limit))
        if request.name == "track_query":
            query = QueryRequest(**args)
            return _text(await tracker.query(query.to_filters(), query.search))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid arguments for {request.name}: {e}")

    raise HTTPException(status_code=404, detail=f"Unknown tool: {request.name}")
