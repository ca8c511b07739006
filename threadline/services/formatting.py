"""Pure rendering helpers for confirmations, issue detail and JSON payloads."""

from __future__ import annotations

import datetime as dt
import math
from typing import Any, Dict, List, Literal, Optional, Sequence

from threadline.schemas.issue import (
    IssueFields,
    IssueRecord,
    QueryIssueResult,
    ThreadMessageRecord,
    ThreadStats,
)

MINUTE = 60
HOUR = 3600
DAY = 86400
WEEK = 604800
MONTH = 2592000
YEAR = 31536000

THIN_CONTEXT_MAX_MESSAGES = 2
THIN_CONTEXT_MAX_CHARS = 200


def as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _iso(value: Optional[dt.datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def time_ago(value: dt.datetime, now: Optional[dt.datetime] = None) -> str:
    now = as_utc(now or dt.datetime.now(dt.timezone.utc))
    seconds = int((now - as_utc(value)).total_seconds())
    if seconds < MINUTE:
        return "just now"
    if seconds < HOUR:
        return f"{seconds // MINUTE}m ago"
    if seconds < DAY:
        return f"{seconds // HOUR}h ago"
    if seconds < WEEK:
        return f"{seconds // DAY}d ago"
    if seconds < MONTH:
        return f"{seconds // WEEK}w ago"
    if seconds < YEAR:
        return f"{seconds // MONTH}mo ago"
    return f"{seconds // YEAR}y ago"


def compute_thread_stats(messages: Sequence[ThreadMessageRecord]) -> ThreadStats:
    return ThreadStats(
        message_count=len(messages),
        total_chars=sum(len(m.content) for m in messages),
    )


def format_char_count(chars: int) -> str:
    if chars < 1000:
        return f"~{chars} chars"
    if chars < 10000:
        return f"~{(chars + 50) // 100 / 10:.1f}k chars"
    return f"~{(chars + 500) // 1000}k chars"


def _msgs(count: int) -> str:
    return f"{count} msg{'' if count == 1 else 's'}"


def is_thin_context(stats: ThreadStats) -> bool:
    return (
        stats.message_count < THIN_CONTEXT_MAX_MESSAGES
        and stats.total_chars < THIN_CONTEXT_MAX_CHARS
    )


def format_thread_stats(stats: ThreadStats) -> str:
    base = f"thread: {_msgs(stats.message_count)}, {format_char_count(stats.total_chars)}"
    if is_thin_context(stats):
        return f"[{base}; context is thin, consider providing more detail]"
    return f"[{base}]"


def _labels_text(labels: Sequence[str]) -> str:
    return ", ".join(labels) if labels else "none"


def format_issue_confirmation(
    issue: IssueRecord, action: Literal["Created", "Updated"], stats: ThreadStats
) -> str:
    return "\n".join(
        [
            f'{action} {issue.id}: "{issue.title}"',
            f"P{issue.priority} {issue.type} | {issue.status} | {_labels_text(issue.labels)}",
            issue.summary or "No summary yet.",
            format_thread_stats(stats),
        ]
    )


def format_issue_detail(issue: IssueRecord, messages: Sequence[ThreadMessageRecord]) -> str:
    """Issue header plus the full thread; the thread section is omitted when empty."""
    header_lines = [
        f'{issue.id}: "{issue.title}"',
        f"P{issue.priority} {issue.type} | {issue.status} | {_labels_text(issue.labels)}",
        f"Created {_iso(issue.created_at)} | Updated {_iso(issue.updated_at)}",
    ]
    if issue.last_message_by:
        header_lines.append(f"Last message by: {issue.last_message_by}")
    header_lines += ["", issue.summary or "No summary yet."]
    header = "\n".join(header_lines)

    if not messages:
        return header

    stats = compute_thread_stats(messages)
    thread = "\n\n".join(f"[{_iso(m.timestamp)} {m.role}] {m.content}" for m in messages)
    return (
        f"{header}\n\nTHREAD ({_msgs(stats.message_count)}, "
        f"{format_char_count(stats.total_chars)}):\n{thread}"
    )


def format_issue_line(issue: IssueRecord) -> str:
    return (
        f"{issue.id} | P{issue.priority} {issue.type} | {issue.status} | {issue.title}\n"
        f"  {issue.summary or 'No summary yet.'}"
    )


def format_issue_list(issues: Sequence[IssueRecord]) -> str:
    if not issues:
        return "No issues found."
    return "\n\n".join(format_issue_line(issue) for issue in issues)


def format_find_results(results: Sequence[IssueRecord]) -> str:
    return "\n\n".join(
        f"{r.id} ({similarity_percent(r.similarity or 0)}%) | P{r.priority} {r.type} | {r.status} | {r.title}\n"
        f"  {r.summary or 'No summary yet.'}"
        for r in results
    )


def format_low_priority_rejection(fields: IssueFields) -> str:
    return "\n".join(
        [
            f'Not tracked (P{fields.priority}, below threshold): "{fields.title}"',
            f"Evaluated as: {fields.type} | {fields.summary}",
            "",
            "To track this, provide more context about its impact or urgency.",
        ]
    )


# ---------------------------------------------------------------------------
# JSON payloads for programmatic callers
# ---------------------------------------------------------------------------


def similarity_percent(similarity: float) -> int:
    """Integer percentage, halves rounded up."""
    return math.floor(similarity * 100 + 0.5)


def issue_summary_payload(issue: IssueRecord) -> Dict[str, Any]:
    return {
        "id": issue.id,
        "title": issue.title,
        "type": issue.type,
        "status": issue.status,
        "priority": issue.priority,
        "summary": issue.summary,
        "last_message_by": issue.last_message_by,
    }


def search_results_payload(results: Sequence[IssueRecord]) -> List[Dict[str, Any]]:
    return [
        {**issue_summary_payload(r), "similarity": similarity_percent(r.similarity or 0)}
        for r in results
    ]


def active_issues_payload(issues: Sequence[IssueRecord]) -> List[Dict[str, Any]]:
    return [{**issue_summary_payload(i), "updated_at": _iso(i.updated_at)} for i in issues]


def dashboard_issues_payload(
    issues: Sequence[IssueRecord], stats_map: Dict[str, ThreadStats]
) -> List[Dict[str, Any]]:
    data = []
    for issue in issues:
        stats = stats_map.get(issue.id, ThreadStats())
        data.append(
            {
                **issue_summary_payload(issue),
                "labels": issue.labels,
                "updated_at": _iso(issue.updated_at),
                "updated_ago": time_ago(issue.updated_at),
                "thread": stats.model_dump(),
            }
        )
    return data


def query_results_payload(results: Sequence[QueryIssueResult]) -> Dict[str, Any]:
    issues = []
    for r in results:
        item: Dict[str, Any] = {
            "id": r.id,
            "title": r.title,
            "type": r.type,
            "status": r.status,
            "priority": r.priority,
            "labels": r.labels,
            "summary": r.summary,
            "last_message_by": r.last_message_by,
            "created_at": _iso(r.created_at),
            "updated_at": _iso(r.updated_at),
            "thread": {"message_count": r.message_count, "total_chars": r.total_chars},
            "last_message": (
                {
                    "role": r.last_message_role,
                    "content": r.last_message_content,
                    "timestamp": _iso(r.last_message_timestamp),
                }
                if r.last_message_role
                else None
            ),
        }
        if r.similarity is not None:
            item["similarity"] = similarity_percent(r.similarity)
        issues.append(item)
    return {"count": len(issues), "issues": issues}
