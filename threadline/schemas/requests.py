from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from threadline.schemas.issue import IssueStatus, IssueType, QueryIssuesFilters, Role

MESSAGE_MAX_LENGTH = 10_000
QUESTION_MAX_LENGTH = 2_000
ISSUE_ID_MAX_LENGTH = 20


class TellRequest(BaseModel):
    message: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)
    issue_id: Optional[str] = Field(default=None, max_length=ISSUE_ID_MAX_LENGTH)


class AskRequest(BaseModel):
    question: str = Field(min_length=1, max_length=QUESTION_MAX_LENGTH)


class GetRequest(BaseModel):
    issue_id: str = Field(min_length=1, max_length=ISSUE_ID_MAX_LENGTH)


class FindRequest(BaseModel):
    message: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)
    limit: int = Field(default=5, ge=1, le=20)


class QueryRequest(BaseModel):
    status: Optional[Union[IssueStatus, List[IssueStatus]]] = None
    type: Optional[Union[IssueType, List[IssueType]]] = None
    priority_max: Optional[int] = Field(default=None, ge=1, le=5)
    last_message_by: Optional[Role] = None
    labels: Optional[List[str]] = None
    min_messages: Optional[int] = Field(default=None, ge=0)
    max_messages: Optional[int] = Field(default=None, ge=0)
    search: Optional[str] = Field(default=None, max_length=QUESTION_MAX_LENGTH)

    def to_filters(self) -> QueryIssuesFilters:
        return QueryIssuesFilters(**self.model_dump(exclude={"search"}))


class ToolCallRequest(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class StatusUpdateRequest(BaseModel):
    status: str


class LoginRequest(BaseModel):
    token: str
