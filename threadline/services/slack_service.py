from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from dataclasses import dataclass
from typing import Literal, Optional

import httpx

logger = logging.getLogger(__name__)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
SLACK_TIMESTAMP_MAX_AGE = 5 * 60

_LIST_RE = re.compile(r"^list\s*$", re.IGNORECASE)
_GET_RE = re.compile(r"^get\s+(wi_\S+)", re.IGNORECASE)
_TELL_RE = re.compile(r"^tell\s+(wi_\S+):\s*(.+)", re.IGNORECASE | re.DOTALL)
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")
_SLACK_LINK_RE = re.compile(r"(<[^>]*>)")
_ISSUE_ID_RE = re.compile(r"\bwi_[A-Za-z0-9]+\b")


@dataclass(frozen=True)
class ParsedMessage:
    mode: Literal["ask", "get", "tell", "list"]
    body: str
    issue_id: Optional[str] = None


def verify_slack_signature(signing_secret: str, timestamp: str, body: str, signature: str) -> bool:
    """Check a request's ``X-Slack-Signature`` against the signing secret.

    Rejects timestamps more than five minutes away from now, in either
    direction, to limit replay.
    """
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    if abs(int(time.time()) - ts) > SLACK_TIMESTAMP_MAX_AGE:
        return False

    base = f"v0:{timestamp}:{body}".encode()
    expected = "v0=" + hmac.new(signing_secret.encode(), base, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


def parse_slack_message(text: str) -> ParsedMessage:
    """Route a DM: ``?question`` asks, ``list`` shows open work, ``get wi_x`` fetches,
    ``tell wi_x: msg`` updates. Anything else is a tell.
    """
    trimmed = text.strip()

    if trimmed.startswith("?"):
        return ParsedMessage(mode="ask", body=trimmed[1:].strip())

    if _LIST_RE.match(trimmed):
        return ParsedMessage(mode="list", body="")

    match = _GET_RE.match(trimmed)
    if match:
        return ParsedMessage(mode="get", body=match.group(1))

    match = _TELL_RE.match(trimmed)
    if match:
        return ParsedMessage(mode="tell", body=match.group(2).strip(), issue_id=match.group(1))

    return ParsedMessage(mode="tell", body=trimmed)


def format_for_slack(text: str, base_url: Optional[str] = None) -> str:
    """Convert Markdown bold and links to Slack mrkdwn; optionally link issue ids."""
    text = _BOLD_RE.sub(r"*\1*", text)
    text = _LINK_RE.sub(r"<\2|\1>", text)
    if not base_url:
        return text

    base_url = base_url.rstrip("/")
    # Odd-indexed parts are existing <...> links and stay untouched
    parts = _SLACK_LINK_RE.split(text)
    for i in range(0, len(parts), 2):
        parts[i] = _ISSUE_ID_RE.sub(lambda m: f"<{base_url}/issue/{m.group(0)}|{m.group(0)}>", parts[i])
    return "".join(parts)


async def post_slack_message(
    bot_token: str, channel: str, text: str, thread_ts: Optional[str] = None
) -> None:
    """Post a reply through ``chat.postMessage``; raises on HTTP or API errors."""
    payload = {"channel": channel, "text": text}
    if thread_ts:
        payload["thread_ts"] = thread_ts

    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.post(
            SLACK_POST_MESSAGE_URL,
            headers={"Authorization": f"Bearer {bot_token}", "Content-Type": "application/json"},
            json=payload,
        )

    if response.status_code != 200:
        raise RuntimeError(f"Slack API HTTP {response.status_code}")
    data = response.json()
    if not data.get("ok"):
        raise RuntimeError(f"Slack API error: {data.get('error')}")
