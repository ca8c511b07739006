from __future__ import annotations

import datetime as dt
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError

from conftest import make_issue, make_stats
from threadline.schemas.issue import IssueFields, ThreadMessageRecord
from threadline.services.ai_service import (
    ANSWER_FAILED_MESSAGE,
    AIService,
    _strip_code_fence,
    format_candidates_for_judgment,
    format_issues_for_qa,
    format_thread_for_extraction,
)

VALID_FIELDS = {
    "title": "Add rate limiting to the API",
    "type": "feature",
    "status": "open",
    "priority": 2,
    "labels": ["API", "rate-limiting", "api", " backend "],
    "summary": "Add rate limiting to the public API.",
}


def _response(text: str) -> SimpleNamespace:
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def _service(*texts: str, error: Exception | None = None) -> AIService:
    client = MagicMock()
    if error is not None:
        client.messages.create = AsyncMock(side_effect=error)
    else:
        client.messages.create = AsyncMock(side_effect=[_response(t) for t in texts])
    return AIService(client=client, model="test-model", embedding_model="test/embed")


def _thread(*contents: str) -> list:
    ts = dt.datetime(2025, 1, 15, 9, 30, tzinfo=dt.timezone.utc)
    return [
        ThreadMessageRecord(id=n + 1, issue_id="wi_test0001", timestamp=ts, role="assistant", content=c)
        for n, c in enumerate(contents)
    ]


class TestFieldExtraction:
    """Test structured field extraction."""

    @pytest.mark.asyncio
    async def test_extract_fields(self):
        """Test valid JSON is validated and normalized."""
        service = _service(json.dumps(VALID_FIELDS))

        fields = await service.extract_fields(_thread("Add rate limiting to the API"))

        assert fields.title == "Add rate limiting to the API"
        assert fields.labels == ["api", "rate-limiting", "backend"]
        kwargs = service.client.messages.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert "[2025-01-15 09:30 assistant] Add rate limiting to the API" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_prior_summary_is_included(self):
        """Test the prior summary is passed as current state."""
        service = _service(json.dumps(VALID_FIELDS))

        await service.extract_fields(_thread("Update"), prior_summary="Old summary.")

        prompt = service.client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "<current_summary>\nOld summary.\n</current_summary>" in prompt

    @pytest.mark.asyncio
    async def test_code_fenced_output(self):
        """Test fenced JSON is accepted."""
        service = _service(f"```json\n{json.dumps(VALID_FIELDS)}\n```")
        assert (await service.extract_fields(_thread("x"))).priority == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text",
        [
            "not json at all",
            json.dumps({**VALID_FIELDS, "priority": 7}),
            json.dumps({**VALID_FIELDS, "status": "archived"}),
            json.dumps({**VALID_FIELDS, "title": "   "}),
        ],
    )
    async def test_invalid_output_returns_none(self, text: str):
        """Test unparseable or schema-violating output yields None."""
        assert await _service(text).extract_fields(_thread("x")) is None

    @pytest.mark.asyncio
    async def test_client_error_returns_none(self):
        """Test transport errors yield None."""
        service = _service(error=RuntimeError("timeout"))
        assert await service.extract_fields(_thread("x")) is None

    @pytest.mark.asyncio
    async def test_empty_thread_raises(self):
        """Test an empty thread is rejected before any call."""
        service = _service()
        with pytest.raises(ValueError):
            await service.extract_fields([])
        service.client.messages.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_same_thread_same_fields(self):
        """Test re-running extraction on an unchanged thread is idempotent under a stubbed model."""
        service = _service(json.dumps(VALID_FIELDS), json.dumps(VALID_FIELDS))
        thread = _thread("Add rate limiting to the API")

        assert await service.extract_fields(thread) == await service.extract_fields(thread)


class TestIssueFields:
    """Test field validation rules."""

    def test_title_truncated(self):
        """Test titles are whitespace-collapsed and capped at 120 chars."""
        fields = IssueFields(**{**VALID_FIELDS, "title": "  Fix   " + "a" * 200})
        assert len(fields.title) == 120
        assert fields.title.startswith("Fix a")

    def test_labels_capped(self):
        """Test at most 8 labels survive."""
        fields = IssueFields(**{**VALID_FIELDS, "labels": [f"l{n}" for n in range(12)]})
        assert len(fields.labels) == 8

    @pytest.mark.parametrize("priority", [0, 6, 2.5, True])
    def test_priority_bounds(self, priority):
        """Test priority must be an integer from 1 to 5."""
        with pytest.raises(ValidationError):
            IssueFields(**{**VALID_FIELDS, "priority": priority})


class TestEmbeddings:
    """Test embedding generation through litellm."""

    @pytest.mark.asyncio
    async def test_generate_embedding(self):
        """Test a correctly sized vector is returned."""
        service = _service()
        service.embedding_dimensions = 3
        response = SimpleNamespace(data=[{"embedding": [0.1, 0.2, 0.3]}])
        with patch("threadline.services.ai_service.litellm.aembedding", new=AsyncMock(return_value=response)) as embed:
            assert await service.generate_embedding("hello") == [0.1, 0.2, 0.3]
        embed.assert_awaited_once_with(model="test/embed", input=["hello"], num_retries=3)

    @pytest.mark.asyncio
    async def test_wrong_dimensions(self):
        """Test vectors of the wrong size are discarded."""
        service = _service()
        service.embedding_dimensions = 4
        response = SimpleNamespace(data=[{"embedding": [0.1, 0.2, 0.3]}])
        with patch("threadline.services.ai_service.litellm.aembedding", new=AsyncMock(return_value=response)):
            assert await service.generate_embedding("hello") is None

    @pytest.mark.asyncio
    async def test_embedding_error(self):
        """Test provider errors yield None."""
        with patch(
            "threadline.services.ai_service.litellm.aembedding",
            new=AsyncMock(side_effect=RuntimeError("rate limited")),
        ):
            assert await _service().generate_embedding("hello") is None


class TestAnswersAndJudgments:
    """Test question answering and duplicate judgment."""

    @pytest.mark.asyncio
    async def test_answer_question(self):
        """Test the issue context reaches the prompt."""
        service = _service("Rate limiting (wi_test0001) is open.")
        issue = make_issue()

        answer = await service.answer_question("What is open?", [issue], {issue.id: make_stats(3, 1200)})

        assert answer == "Rate limiting (wi_test0001) is open."
        prompt = service.client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "wi_test0001 | P2 feature | open | Add rate limiting to memory API" in prompt
        assert "3 msgs ~1.2k chars" in prompt

    @pytest.mark.asyncio
    async def test_answer_failure(self):
        """Test failures return the fixed message."""
        service = _service(error=RuntimeError("boom"))
        assert await service.answer_question("?", [make_issue()], {}) == ANSWER_FAILED_MESSAGE

    @pytest.mark.asyncio
    async def test_judge_duplicate(self):
        """Test a valid judgment is parsed."""
        service = _service('{"intent": "directive", "match_id": "wi_test0001", "reasoning": "Same work."}')

        judgment = await service.judge_duplicate("Done with rate limiting", [make_issue(similarity=0.9)])

        assert judgment.intent == "directive"
        assert judgment.match_id == "wi_test0001"

    @pytest.mark.asyncio
    async def test_judge_duplicate_invalid(self):
        """Test an invalid judgment yields None."""
        service = _service('{"intent": "maybe"}')
        assert await service.judge_duplicate("x", [make_issue(similarity=0.9)]) is None


class TestHelpers:
    """Test prompt helpers."""

    def test_strip_code_fence(self):
        """Test fences with and without a language tag."""
        assert _strip_code_fence("```json\n{}\n```") == "{}"
        assert _strip_code_fence("```\n[]\n```") == "[]"
        assert _strip_code_fence("  {} ") == "{}"

    def test_format_thread_for_extraction(self):
        """Test messages are separated by blank lines."""
        text = format_thread_for_extraction(_thread("a", "b"))
        assert text == "[2025-01-15 09:30 assistant] a\n\n[2025-01-15 09:30 assistant] b"

    def test_format_thread_for_extraction_in_utc(self):
        """Test offset and naive timestamps are rendered in UTC."""
        offset = dt.timezone(dt.timedelta(hours=-5))
        messages = [
            ThreadMessageRecord(
                id=1,
                issue_id="wi_test0001",
                timestamp=dt.datetime(2025, 1, 15, 4, 30, tzinfo=offset),
                role="user",
                content="late",
            ),
            ThreadMessageRecord(
                id=2,
                issue_id="wi_test0001",
                timestamp=dt.datetime(2025, 1, 15, 10, 0),
                role="assistant",
                content="naive",
            ),
        ]
        text = format_thread_for_extraction(messages)
        assert text == "[2025-01-15 09:30 user] late\n\n[2025-01-15 10:00 assistant] naive"

    def test_format_issues_for_qa_uses_utc_date(self):
        """Test the updated date is taken after UTC conversion."""
        offset = dt.timezone(dt.timedelta(hours=-5))
        issue = make_issue(updated_at=dt.datetime(2025, 1, 15, 21, 0, tzinfo=offset))
        text = format_issues_for_qa([issue], {issue.id: make_stats(2, 300)})
        assert "updated 2025-01-16 | 2 msgs ~300 chars" in text

    def test_candidate_similarity_rounds_half_up(self):
        text = format_candidates_for_judgment([make_issue(similarity=0.125)])
        assert text.startswith("wi_test0001 | similarity 13 |")
