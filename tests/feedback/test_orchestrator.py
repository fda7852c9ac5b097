"""
Tests for FeedbackOrchestrator.

Provider calls go through a scripted completion; the cache runs on
fakeredis and persistence on the in-memory repository.
"""

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import openai
import pytest

from caseprep.ai.prompts import MAX_PROMPT_LENGTH
from caseprep.exceptions import (
    CacheConnectionError,
    ConfigurationError,
    NotFoundError,
    ValidationError,
)
from caseprep.feedback.models import AIFeedback, FeedbackType
from caseprep.feedback.orchestrator import FeedbackOrchestrator

from conftest import EVALUATION, NARRATIVE, ScriptedCompletion, drill_payload, make_client


def _provider_down() -> openai.APIConnectionError:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return openai.APIConnectionError(request=request)


async def _generate(orchestrator: FeedbackOrchestrator, **overrides) -> AIFeedback:
    payload = drill_payload(**overrides)
    return await orchestrator.generate(
        payload["attempt_id"], payload["type"], payload["response"]
    )


# ── Generation ──────────────────────────────────────────


class TestGenerate:
    async def test_generates_and_persists(self, orchestrator, completion, repository) -> None:
        payload = drill_payload()
        feedback = await orchestrator.generate(
            payload["attempt_id"], "DRILL", payload["response"]
        )
        assert feedback.attempt_id == payload["attempt_id"]
        assert feedback.type == FeedbackType.DRILL
        assert feedback.overall_score == 72
        assert feedback.strengths == EVALUATION["strengths"]
        assert feedback.summary == NARRATIVE
        assert len(feedback.feedback_points) == 1
        assert await repository.find_by_id(feedback.id) == feedback
        assert len(completion.calls) == 2

    async def test_evaluation_call_carries_submission(self, orchestrator, completion) -> None:
        await _generate(orchestrator)
        evaluation_request = completion.calls[0]
        assert evaluation_request["messages"][0]["role"] == "system"
        assert "variable costs rose 12%" in evaluation_request["messages"][1]["content"]
        narrative_request = completion.calls[1]
        assert "Score: 72/100" in narrative_request["messages"][0]["content"]

    async def test_populates_cache_on_write(self, orchestrator, connected_store, clock) -> None:
        feedback = await _generate(orchestrator)
        entry = await connected_store.get(feedback.id)
        assert entry["cached_at"] == clock.now
        assert AIFeedback.model_validate(entry["data"]) == feedback

    @pytest.mark.parametrize(
        "overrides",
        [
            {"attempt_id": "not-a-uuid"},
            {"type": "ESSAY"},
            {"response": {"content": "", "metrics": []}},
        ],
    )
    async def test_invalid_request_makes_no_calls(
        self, orchestrator, completion, repository, overrides
    ) -> None:
        with pytest.raises(ValidationError):
            await _generate(orchestrator, **overrides)
        assert completion.calls == []
        assert repository.calls["save"] == 0

    async def test_concurrent_requests_share_one_generation(
        self, connected_store, repository, clock
    ) -> None:
        completion = ScriptedCompletion([json.dumps(EVALUATION), NARRATIVE], delay=0.01)
        orchestrator = FeedbackOrchestrator(
            connected_store, make_client(completion), repository, clock=clock
        )
        payload = drill_payload()
        results = await asyncio.gather(
            *(
                orchestrator.generate(payload["attempt_id"], "DRILL", payload["response"])
                for _ in range(10)
            )
        )
        assert len({r.id for r in results}) == 1
        assert len(completion.calls) == 2
        assert repository.calls["save"] == 1

    async def test_sequential_requests_generate_again(self, orchestrator, repository) -> None:
        payload = drill_payload()
        first = await orchestrator.generate(payload["attempt_id"], "DRILL", payload["response"])
        second = await orchestrator.generate(payload["attempt_id"], "DRILL", payload["response"])
        assert first.id != second.id
        assert repository.calls["save"] == 2

    async def test_evaluation_failure_persists_nothing(self, connected_store, repository) -> None:
        completion = ScriptedCompletion([_provider_down()])
        orchestrator = FeedbackOrchestrator(connected_store, make_client(completion), repository)
        with pytest.raises(openai.APIConnectionError):
            await _generate(orchestrator)
        assert len(completion.calls) == 3
        assert repository.calls["save"] == 0

    async def test_narrative_failure_persists_nothing(self, connected_store, repository) -> None:
        completion = ScriptedCompletion([json.dumps(EVALUATION), _provider_down()])
        orchestrator = FeedbackOrchestrator(connected_store, make_client(completion), repository)
        with pytest.raises(openai.APIConnectionError):
            await _generate(orchestrator)
        # one evaluation call, three narrative attempts
        assert len(completion.calls) == 4
        assert repository.calls["save"] == 0

    async def test_failed_generation_can_be_retried(self, connected_store, repository) -> None:
        completion = ScriptedCompletion(
            [_provider_down(), _provider_down(), _provider_down(), json.dumps(EVALUATION), NARRATIVE]
        )
        orchestrator = FeedbackOrchestrator(connected_store, make_client(completion), repository)
        payload = drill_payload()
        with pytest.raises(openai.APIConnectionError):
            await orchestrator.generate(payload["attempt_id"], "DRILL", payload["response"])
        feedback = await orchestrator.generate(payload["attempt_id"], "DRILL", payload["response"])
        assert feedback.summary == NARRATIVE

    async def test_long_evaluation_still_generates(self, connected_store, repository) -> None:
        evaluation = dict(EVALUATION, strengths=[f"Point {i} " + "s" * 450 for i in range(12)])
        completion = ScriptedCompletion([json.dumps(evaluation), NARRATIVE])
        orchestrator = FeedbackOrchestrator(connected_store, make_client(completion), repository)
        feedback = await _generate(orchestrator)
        assert feedback.strengths == evaluation["strengths"]
        assert len(completion.calls) == 2
        narrative_prompt = completion.calls[1]["messages"][0]["content"]
        assert len(narrative_prompt) <= MAX_PROMPT_LENGTH
        assert repository.calls["save"] == 1

    def test_unregistered_cache_category_rejected(self, cache_store, repository) -> None:
        with pytest.raises(ConfigurationError, match="no registered TTL"):
            FeedbackOrchestrator(
                cache_store,
                make_client(ScriptedCompletion([NARRATIVE])),
                repository,
                cache_category="nope",
            )
        assert repository.calls["save"] == 0

    async def test_cache_failure_after_persist_is_tolerated(
        self, orchestrator, connected_store, repository, monkeypatch
    ) -> None:
        async def broken_set(*args, **kwargs):
            raise CacheConnectionError("Cache set failed")

        monkeypatch.setattr(connected_store, "set", broken_set)
        feedback = await _generate(orchestrator)
        assert await repository.find_by_id(feedback.id) == feedback


# ── Reads ───────────────────────────────────────────────


class TestGet:
    async def test_fresh_cache_served_without_repository(self, orchestrator, repository) -> None:
        feedback = await _generate(orchestrator)
        first = await orchestrator.get(feedback.id)
        second = await orchestrator.get(feedback.id)
        assert first == second == feedback
        assert repository.calls["find_by_id"] == 0

    async def test_stale_entry_reloads_from_repository(
        self, orchestrator, repository, clock
    ) -> None:
        feedback = await _generate(orchestrator)
        clock.now += 300
        assert await orchestrator.get(feedback.id) == feedback
        assert repository.calls["find_by_id"] == 1
        # repopulated with a fresh timestamp
        assert await orchestrator.get(feedback.id) == feedback
        assert repository.calls["find_by_id"] == 1

    async def test_cold_read_populates_cache(self, orchestrator, repository, connected_store) -> None:
        stored = await repository.save(
            AIFeedback(attempt_id=str(uuid.uuid4()), type="DRILL", overall_score=40)
        )
        assert await orchestrator.get(stored.id) == stored
        assert await connected_store.get(stored.id) is not None
        await orchestrator.get(stored.id)
        assert repository.calls["find_by_id"] == 1

    async def test_unknown_id_returns_none(self, orchestrator) -> None:
        assert await orchestrator.get("missing") is None

    async def test_corrupt_cache_entry_falls_back(
        self, orchestrator, repository, connected_store, clock
    ) -> None:
        feedback = await _generate(orchestrator)
        await connected_store.set(
            feedback.id, {"data": {"overallScore": "lots"}, "cached_at": clock.now}, "feedback"
        )
        assert await orchestrator.get(feedback.id) == feedback
        assert repository.calls["find_by_id"] == 1

    async def test_empty_id_rejected(self, orchestrator) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.get("  ")


class TestGetByAttempt:
    async def test_newest_first(self, orchestrator, repository) -> None:
        attempt_id = str(uuid.uuid4())
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for offset in (0, 2, 1):
            await repository.save(
                AIFeedback(
                    attempt_id=attempt_id,
                    type="DRILL",
                    overall_score=50 + offset,
                    created_at=base + timedelta(minutes=offset),
                )
            )
        records = await orchestrator.get_by_attempt(attempt_id.upper())
        assert [r.overall_score for r in records] == [52, 51, 50]

    async def test_unknown_attempt_returns_empty(self, orchestrator) -> None:
        assert await orchestrator.get_by_attempt(uuid.uuid4()) == []

    async def test_malformed_attempt_id_rejected(self, orchestrator, repository) -> None:
        with pytest.raises(ValidationError, match="Invalid attempt ID"):
            await orchestrator.get_by_attempt("attempt-1")
        assert repository.calls["find_by_attempt"] == 0


# ── Updates ─────────────────────────────────────────────


class TestUpdate:
    async def test_update_invalidates_cache(self, orchestrator, connected_store) -> None:
        feedback = await _generate(orchestrator)
        await orchestrator.get(feedback.id)

        updated = await orchestrator.update(feedback.id, {"summary": "Revised"})
        assert updated.summary == "Revised"
        assert updated.overall_score == feedback.overall_score
        assert await connected_store.get(feedback.id) is None

        reread = await orchestrator.get(feedback.id)
        assert reread.summary == "Revised"

    async def test_update_unknown_id(self, orchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.update("missing", {"summary": "x"})

    async def test_invalid_patch_rejected(self, orchestrator, repository) -> None:
        feedback = await _generate(orchestrator)
        with pytest.raises(ValidationError):
            await orchestrator.update(feedback.id, {"overallScore": 500})
        with pytest.raises(ValidationError):
            await orchestrator.update(feedback.id, {})
        assert repository.calls["update"] == 0

    async def test_concurrent_read_never_restores_stale_entry(
        self, orchestrator, connected_store, repository
    ) -> None:
        feedback = await _generate(orchestrator)
        await connected_store.delete(feedback.id)

        _, updated = await asyncio.gather(
            orchestrator.get(feedback.id),
            orchestrator.update(feedback.id, {"summary": "Revised"}),
        )
        assert updated.summary == "Revised"
        assert (await orchestrator.get(feedback.id)).summary == "Revised"
