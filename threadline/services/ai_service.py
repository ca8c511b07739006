from __future__ import annotations

import json
import logging
from typing import Dict, List, Literal, Optional, Sequence, Type, TypeVar

import litellm
from anthropic import AsyncAnthropic
from pydantic import BaseModel, ValidationError

from threadline.schemas.issue import IssueFields, IssueRecord, ThreadMessageRecord, ThreadStats
from threadline.services.config_service import TrackerConfigService
from threadline.services.formatting import as_utc, format_char_count, similarity_percent

logger = logging.getLogger(__name__)

# Keep litellm quiet unless explicitly enabled
litellm.suppress_debug_info = True

ModelT = TypeVar("ModelT", bound=BaseModel)

ANSWER_FAILED_MESSAGE = "Failed to generate answer. Please try again."
EMBEDDING_NUM_RETRIES = 3

EXTRACTION_PROMPT = """<role>
You are a structured data extractor for an issue tracker.
</role>

<task>
Read the conversation thread and extract the current state of the issue into structured fields. Always reflect the latest state of the conversation, not earlier messages that were superseded. If a current_summary is provided, treat it as prior state to be updated. The thread always takes precedence.
</task>

<field_rules>
<field name="title">
Imperative form, under 120 characters. Focus on the action or outcome.
Good: "Add rate limiting to memory API"
Bad: "Investigating rate limiting options"
</field>

<field name="type">
- "bug" = something broken, error, or not working as expected
- "feature" = new capability or enhancement
- "task" = everything else (refactors, investigations, documentation)
</field>

<field name="status">
- "open" = not started, just discussed
- "active" = work mentioned, in progress, or partially complete
- "done" = explicitly completed, closed, merged, or marked as resolved
</field>

<field name="priority">
Choose exactly one:
- 1 = critical/urgent (blocking, security, production issue)
- 2 = high (important, time-sensitive)
- 3 = normal (default when no urgency indicated and the change has functional impact)
- 4 = backlog (nice-to-have, future consideration)
- 5 = negligible impact (typo fix, formatting, import reorder, whitespace; purely mechanical with no behavioral change)
</field>

<field name="labels">
3-8 relevant tags. Use lowercase, single-word or hyphenated terms. Examples: "backend", "auth", "rate-limiting", "api", "frontend".
</field>

<field name="summary">
2-3 sentences covering: (1) what this issue is about, (2) current status and decisions made, (3) concrete next steps if any were discussed. Do not speculate about next steps that were not mentioned.
</field>
</field_rules>

<output_format>
Respond with a single JSON object and nothing else:
{"title": "...", "type": "bug|feature|task", "status": "open|active|done", "priority": <1-5>, "labels": ["..."], "summary": "..."}
</output_format>"""

QA_PROMPT = """<role>
You are an issue tracker assistant.
</role>

<task>
Answer the user's question using only the issue data provided below. Be direct and specific. Avoid preambles; just answer.
</task>

<guidelines>
- Reference issues by ID in parentheses, e.g. "The auth refactor (wi_a3Kx) is in progress"
- Give complete but focused answers: include relevant context without unnecessary detail
- When asked about priority or "what's next", recommend priority 1-2 issues first, then "open" over "active"
- If multiple issues match, list up to 3 most relevant
- If no issues match, say so clearly and suggest related issues if any exist
- Only reference issues listed below. Never infer issues not present in the data.
</guidelines>"""

DUPLICATE_PROMPT = """<role>
You are the duplicate detector of an issue tracker.
</role>

<task>
Decide whether the incoming message describes the same unit of work as one of the candidate issues.

First classify the message intent:
- "directive" = an instruction about existing work, e.g. "deprioritize X", "done with X", "reopen X", "archive X"
- "new_work" = a report of new work, a new problem, or a new request

Then pick the candidate that is the same unit of work, if any:
- Same system or area but a different change is NOT the same unit of work.
  Example: "Add rate limiting to the API" vs "Fix API timeout errors" are related, not duplicates.
- For "new_work", a candidate with status "done" or "archived" is never a match.
- For "directive", any status may match.
- When several candidates qualify, pick the one whose title and summary most closely match the intent.
- If uncertain, answer with no match. Creating a new issue is preferred over merging unrelated work.
</task>

<output_format>
Respond with a single JSON object and nothing else:
{"intent": "new_work|directive", "match_id": "<candidate id or null>", "reasoning": "<one sentence>"}
</output_format>"""


class NoObjectGeneratedError(Exception):
    """The model answered, but not with an object satisfying the schema."""


class DuplicateJudgment(BaseModel):
    intent: Literal["new_work", "directive"]
    match_id: Optional[str] = None
    reasoning: str = ""


def _strip_code_fence(response_text: str) -> str:
    response_text = response_text.strip()
    if response_text.startswith("```json"):
        response_text = response_text[7:]
    elif response_text.startswith("```"):
        response_text = response_text[3:]
    if response_text.endswith("```"):
        response_text = response_text[:-3]
    return response_text.strip()


def format_thread_for_extraction(messages: Sequence[ThreadMessageRecord]) -> str:
    return "\n\n".join(
        f"[{as_utc(m.timestamp).strftime('%Y-%m-%d %H:%M')} {m.role}] {m.content}" for m in messages
    )


def format_issues_for_qa(issues: Sequence[IssueRecord], stats_map: Dict[str, ThreadStats]) -> str:
    blocks = []
    for issue in issues:
        updated = as_utc(issue.updated_at).strftime("%Y-%m-%d")
        stats = stats_map.get(issue.id)
        thread_info = (
            f" | {stats.message_count} msgs {format_char_count(stats.total_chars)}" if stats else ""
        )
        blocks.append(
            f"{issue.id} | P{issue.priority} {issue.type} | {issue.status} | {issue.title} "
            f"| updated {updated}{thread_info}\n  {issue.summary}"
        )
    return "\n\n".join(blocks)


def format_candidates_for_judgment(candidates: Sequence[IssueRecord]) -> str:
    return "\n\n".join(
        f"{c.id} | similarity {similarity_percent(c.similarity or 0)} | {c.type} | {c.status} | {c.title}\n  {c.summary}"
        for c in candidates
    )


class AIService:
    """Model-backed collaborators: field extraction, embeddings, answers, duplicate judgment.

    Every public method degrades instead of raising: failures are logged and
    reported as ``None`` (or a fixed message for answers).
    """

    def __init__(self, client: Optional[AsyncAnthropic] = None, model: Optional[str] = None,
                 embedding_model: Optional[str] = None) -> None:
        self._client = client
        self.model = model or TrackerConfigService.get_ai_model()
        self.embedding_model = embedding_model or TrackerConfigService.get_embedding_model()
        self.embedding_dimensions = TrackerConfigService.get_embedding_dimensions()
        self.max_tokens = TrackerConfigService.get_max_tokens()

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(
                api_key=TrackerConfigService.get_claude_api_key(),
                timeout=TrackerConfigService.get_ai_timeout(),
            )
        return self._client

    async def _generate(self, system: str, prompt: str) -> str:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(block.text for block in response.content if getattr(block, "type", "text") == "text")

    async def _generate_object(self, system: str, prompt: str, schema: Type[ModelT]) -> ModelT:
        """Generate text and validate it as *schema*; raises NoObjectGeneratedError otherwise."""
        text = await self._generate(system, prompt)
        try:
            return schema.model_validate(json.loads(_strip_code_fence(text)))
        except (json.JSONDecodeError, ValidationError) as e:
            raise NoObjectGeneratedError(str(e)) from e

    async def extract_fields(
        self, messages: Sequence[ThreadMessageRecord], prior_summary: Optional[str] = None
    ) -> Optional[IssueFields]:
        """Derive issue fields from the whole thread; None when no valid fields came back."""
        if not messages:
            raise ValueError("extract_fields requires at least one message")

        current = f"\n<current_summary>\n{prior_summary}\n</current_summary>" if prior_summary else ""
        prompt = f"{current}\n<thread>\n{format_thread_for_extraction(messages)}\n</thread>"
        try:
            return await self._generate_object(EXTRACTION_PROMPT, prompt, IssueFields)
        except NoObjectGeneratedError as e:
            logger.warning(f"Field extraction produced no valid object: {e}")
            return None
        except Exception as e:
            logger.error(f"Field extraction failed: {e}")
            return None

    async def generate_embedding(self, text: str) -> Optional[List[float]]:
        try:
            response = await litellm.aembedding(
                model=self.embedding_model, input=[text], num_retries=EMBEDDING_NUM_RETRIES
            )
            vector = [float(v) for v in response.data[0]["embedding"]]
        except Exception as e:
            logger.error(f"Embedding generation failed: {e}")
            return None

        if len(vector) != self.embedding_dimensions:
            logger.error(
                f"Embedding has {len(vector)} dimensions, expected {self.embedding_dimensions}"
            )
            return None
        return vector

    async def answer_question(
        self, question: str, issues: Sequence[IssueRecord], stats_map: Dict[str, ThreadStats]
    ) -> str:
        prompt = (
            f"<issues>\n{format_issues_for_qa(issues, stats_map)}\n</issues>\n\n"
            f"<question>\n{question}\n</question>"
        )
        try:
            return await self._generate(QA_PROMPT, prompt)
        except Exception as e:
            logger.error(f"Answer generation failed: {e}")
            return ANSWER_FAILED_MESSAGE

    async def judge_duplicate(
        self, message: str, candidates: Sequence[IssueRecord]
    ) -> Optional[DuplicateJudgment]:
        """Classify intent and name the candidate that is the same unit of work."""
        prompt = (
            f"<candidates>\n{format_candidates_for_judgment(candidates)}\n</candidates>\n\n"
            f"<message>\n{message}\n</message>"
        )
        try:
            return await self._generate_object(DUPLICATE_PROMPT, prompt, DuplicateJudgment)
        except NoObjectGeneratedError as e:
            logger.warning(f"Duplicate judgment produced no valid object: {e}")
            return None
        except Exception as e:
            logger.error(f"Duplicate judgment failed: {e}")
            return None


def create_ai_service(client: Optional[AsyncAnthropic] = None) -> AIService:
    """Factory function for creating the model-backed service."""
    return AIService(client=client)
