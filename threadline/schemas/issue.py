from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

IssueType = Literal["bug", "feature", "task"]
IssueStatus = Literal["open", "active", "done", "archived"]
ExtractedStatus = Literal["open", "active", "done"]
Role = Literal["user", "assistant", "system"]

ISSUE_STATUSES = ("open", "active", "done", "archived")
CLOSED_STATUSES = frozenset({"done", "archived"})

TITLE_MAX_LENGTH = 120
MAX_LABELS = 8


def parse_labels(raw: Any) -> List[str]:
    """Decode a labels value from the datastore; malformed input becomes []."""
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Malformed labels value %r, using []", raw[:100])
            return []
    if not isinstance(raw, list):
        return []
    return [str(label) for label in raw]


class IssueFields(BaseModel):
    """Structured fields extracted from a thread."""

    title: str
    type: IssueType
    status: ExtractedStatus
    priority: int = Field(ge=1, le=5)
    labels: List[str] = Field(default_factory=list)
    summary: str

    @field_validator("title")
    @classmethod
    def _clean_title(cls, value: str) -> str:
        value = " ".join(value.split())
        if not value:
            raise ValueError("title must not be empty")
        return value[:TITLE_MAX_LENGTH]

    @field_validator("priority", mode="before")
    @classmethod
    def _integral_priority(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("priority must be an integer")
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError("priority must be an integer")
            return int(value)
        return value

    @field_validator("labels")
    @classmethod
    def _clean_labels(cls, value: List[str]) -> List[str]:
        cleaned: List[str] = []
        for label in value:
            label = label.strip().lower()
            if label and label not in cleaned:
                cleaned.append(label)
        return cleaned[:MAX_LABELS]

    @field_validator("summary")
    @classmethod
    def _clean_summary(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("summary must not be empty")
        return value


class ThreadStats(BaseModel):
    message_count: int = 0
    total_chars: int = 0


class ThreadMessageRecord(BaseModel):
    id: int
    issue_id: str
    timestamp: datetime
    role: Role
    content: str

    model_config = ConfigDict(from_attributes=True)


class IssueRecord(BaseModel):
    """An issue as read from the store, with optional derived annotations."""

    id: str
    title: str
    type: IssueType
    status: IssueStatus
    priority: int
    labels: List[str] = Field(default_factory=list)
    summary: str = ""
    embedding: Optional[List[float]] = None
    created_at: datetime
    updated_at: datetime
    last_message_by: Optional[Role] = None
    similarity: Optional[float] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "IssueRecord":
        data = dict(row)
        data["labels"] = parse_labels(data.get("labels"))
        data["summary"] = data.get("summary") or ""
        return cls(**data)


class QueryIssuesFilters(BaseModel):
    """Compound filters accepted by IssueStore.query_issues."""

    status: Optional[Union[IssueStatus, List[IssueStatus]]] = None
    type: Optional[Union[IssueType, List[IssueType]]] = None
    priority_max: Optional[int] = Field(default=None, ge=1, le=5)
    last_message_by: Optional[Role] = None
    labels: Optional[List[str]] = None
    min_messages: Optional[int] = Field(default=None, ge=0)
    max_messages: Optional[int] = Field(default=None, ge=0)
    search_embedding: Optional[List[float]] = None


class QueryIssueResult(BaseModel):
    id: str
    title: str
    type: IssueType
    status: IssueStatus
    priority: int
    labels: List[str] = Field(default_factory=list)
    summary: str = ""
    last_message_by: Optional[Role] = None
    created_at: datetime
    updated_at: datetime
    message_count: int = 0
    total_chars: int = 0
    last_message_role: Optional[Role] = None
    last_message_content: Optional[str] = None
    last_message_timestamp: Optional[datetime] = None
    similarity: Optional[float] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QueryIssueResult":
        data = dict(row)
        data["labels"] = parse_labels(data.get("labels"))
        data["summary"] = data.get("summary") or ""
        data["message_count"] = data.get("message_count") or 0
        data["total_chars"] = data.get("total_chars") or 0
        return cls(**data)
