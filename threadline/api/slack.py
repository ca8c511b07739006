from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response

from threadline.services.config_service import TrackerConfigService
from threadline.services.slack_service import (
    format_for_slack,
    parse_slack_message,
    post_slack_message,
    verify_slack_signature,
)
from threadline.services.tracker_service import TrackerService, get_tracker_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/slack", tags=["Slack"])


async def handle_slack_message(
    tracker: TrackerService, bot_token: str, channel: str, text: str, thread_ts: str
) -> None:
    """Run the parsed command and reply in the message's thread. Errors are logged."""
    try:
        parsed = parse_slack_message(text)
        if parsed.mode == "ask":
            result = await tracker.ask(parsed.body)
        elif parsed.mode == "get":
            result = await tracker.get(parsed.body)
        elif parsed.mode == "list":
            result = await tracker.list_active()
        else:
            result = await tracker.tell(parsed.body, parsed.issue_id)

        await post_slack_message(
            bot_token,
            channel,
            format_for_slack(result, TrackerConfigService.get_base_url()),
            thread_ts,
        )
    except Exception as e:
        logger.error(f"Slack handler error: {e}")


@router.post("/events")
async def slack_events(
    request: Request,
    background_tasks: BackgroundTasks,
    tracker: TrackerService = Depends(get_tracker_service),
) -> Any:
    """Slack Events API endpoint. Acknowledges immediately; work runs after the response."""
    bot_token = TrackerConfigService.get_slack_bot_token()
    signing_secret = TrackerConfigService.get_slack_signing_secret()
    if not bot_token or not signing_secret:
        raise HTTPException(status_code=503, detail="Slack integration not configured")

    raw_body = (await request.body()).decode("utf-8", errors="replace")
    timestamp = request.headers.get("x-slack-request-timestamp", "")
    signature = request.headers.get("x-slack-signature", "")

    try:
        payload: Dict[str, Any] = json.loads(raw_body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    if not verify_slack_signature(signing_secret, timestamp, raw_body, signature):
        raise HTTPException(status_code=401, detail="Invalid signature")

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    if request.headers.get("x-slack-retry-num"):
        logger.warning(f"Slack retry dropped: {request.headers.get('x-slack-retry-reason')}")
        return Response(status_code=200)

    event = payload.get("event")
    if not isinstance(event, dict):
        return Response(status_code=200)

    # Only direct messages from people
    if (
        event.get("type") != "message"
        or event.get("channel_type") != "im"
        or event.get("bot_id")
        or event.get("subtype")
    ):
        return Response(status_code=200)

    background_tasks.add_task(
        handle_slack_message,
        tracker,
        bot_token,
        str(event.get("channel")),
        str(event.get("text") or ""),
        str(event.get("ts")),
    )
    return Response(status_code=200)
