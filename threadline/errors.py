from __future__ import annotations


class TrackerError(Exception):
    """Base class for errors raised inside the tracker."""


class IssueNotFoundError(TrackerError):
    """Raised when a referenced issue id does not exist."""

    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


class ConfigurationError(TrackerError):
    """Raised when a required setting (database URL, secrets) is missing."""


class StoreUnavailableError(TrackerError):
    """Raised when the datastore cannot be reached."""


class StepBudgetExceededError(TrackerError):
    """Raised when a pipeline tries to run more tool steps than allowed."""
