from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Optional, Sequence

from threadline.schemas.issue import CLOSED_STATUSES, IssueRecord
from threadline.services.ai_service import AIService
from threadline.services.config_service import TrackerConfigService

logger = logging.getLogger(__name__)

Band = Literal["duplicate", "related", "irrelevant"]


@dataclass(frozen=True)
class Resolution:
    """Outcome of duplicate resolution for a message without an explicit issue id."""

    action: Literal["create", "update"]
    reason: str
    issue_id: Optional[str] = None
    similarity: Optional[float] = None


class DuplicateResolver:
    """Decide whether an incoming message belongs to an existing issue.

    Only candidates in the duplicate band are put in front of the model, which
    classifies the message intent and names the candidate that is the same unit
    of work. New-work messages never land on a done or archived issue. Any
    doubt resolves to creating a new issue.
    """

    def __init__(
        self,
        ai: AIService,
        duplicate_threshold: Optional[float] = None,
        related_threshold: Optional[float] = None,
    ) -> None:
        self.ai = ai
        self.duplicate_threshold = (
            TrackerConfigService.get_duplicate_threshold()
            if duplicate_threshold is None
            else duplicate_threshold
        )
        self.related_threshold = (
            TrackerConfigService.get_related_threshold()
            if related_threshold is None
            else related_threshold
        )

    def band(self, similarity: float) -> Band:
        if similarity >= self.duplicate_threshold:
            return "duplicate"
        if similarity >= self.related_threshold:
            return "related"
        return "irrelevant"

    async def resolve(self, message: str, candidates: Sequence[IssueRecord]) -> Resolution:
        strong = [c for c in candidates if self.band(c.similarity or 0.0) == "duplicate"]
        if not strong:
            best = max((c.similarity or 0.0 for c in candidates), default=None)
            reason = "no candidates" if best is None else f"best match {self.band(best)}"
            return Resolution(action="create", reason=reason, similarity=best)

        judgment = await self.ai.judge_duplicate(message, strong)
        if judgment is None:
            return Resolution(action="create", reason="duplicate judgment unavailable")
        if not judgment.match_id:
            return Resolution(action="create", reason=f"{judgment.intent}: no same unit of work")

        eligible = {
            c.id: c
            for c in strong
            if judgment.intent == "directive" or c.status not in CLOSED_STATUSES
        }
        match = eligible.get(judgment.match_id)
        if match is None:
            logger.info(
                f"Ignoring duplicate match {judgment.match_id} for {judgment.intent} message "
                "(not an eligible candidate)"
            )
            return Resolution(action="create", reason=f"{judgment.intent}: match not eligible")

        return Resolution(
            action="update",
            reason=f"{judgment.intent}: same unit of work",
            issue_id=match.id,
            similarity=match.similarity,
        )
