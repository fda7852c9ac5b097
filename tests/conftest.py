"""Shared fixtures: fakeredis-backed cache, scripted completions, orchestrator."""

import asyncio
import json
import uuid
from typing import Any, Dict, List, Optional

import fakeredis
import pytest

from caseprep.ai.client import AIClientSettings, ResilientClient, RetryPolicy
from caseprep.cache.store import CacheConfig, CacheStore
from caseprep.feedback.orchestrator import FeedbackOrchestrator
from caseprep.feedback.repository import InMemoryFeedbackRepository

TTLS = {"drill": 3600, "user": 1800, "simulation": 7200, "feedback": 300}

EVALUATION = {
    "score": 72,
    "strengths": ["Clear MECE structure", "Correct break-even maths"],
    "improvements": ["State assumptions up front"],
    "feedbackPoints": [
        {
            "category": "structure",
            "severity": "important",
            "message": "Framework skipped cost drivers",
            "suggestion": "Split costs into fixed and variable",
        }
    ],
}

NARRATIVE = "Strong structure overall.\n- Keep stating assumptions explicitly."


def completion_response(content: str) -> Dict[str, Any]:
    """Minimal chat completion payload with one choice."""
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class ScriptedCompletion:
    """Async stand-in for ``chat.completions.create``.

    Each call consumes the next scripted item: a string becomes the
    message content, an exception instance is raised, and any other
    object is returned as the raw response.  The last item repeats once
    the script is exhausted.
    """

    def __init__(self, script: List[Any], delay: float = 0.0) -> None:
        self.script = list(script)
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, **request: Any) -> Any:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        index = min(len(self.calls) - 1, len(self.script) - 1)
        item = self.script[index]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return completion_response(item)
        return item


async def no_sleep(_: float) -> None:
    return None


def make_client(
    completion: ScriptedCompletion,
    policy: Optional[RetryPolicy] = None,
) -> ResilientClient:
    return ResilientClient(
        AIClientSettings(api_key="sk-test"),
        policy or RetryPolicy(max_attempts=3, inter_attempt_delay=0.0, per_attempt_timeout=1.0),
        completion=completion,
        sleep=no_sleep,
    )


def drill_payload(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "attempt_id": str(uuid.uuid4()),
        "type": "DRILL",
        "response": {
            "content": "Profit fell because variable costs rose 12% while price was flat.",
            "metrics": [{"name": "revenue", "value": 1200}, {"name": "margin", "value": 0.18}],
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache_store(redis_client) -> CacheStore:
    """Unconnected CacheStore over an isolated fakeredis server."""
    return CacheStore(
        CacheConfig(url="redis://localhost:6379/0", ttl_by_category=dict(TTLS)),
        _redis_client=redis_client,
    )


@pytest.fixture
async def connected_store(cache_store: CacheStore):
    await cache_store.connect()
    yield cache_store
    await cache_store.close()


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion([json.dumps(EVALUATION), NARRATIVE, json.dumps(EVALUATION), NARRATIVE])


@pytest.fixture
def repository() -> InMemoryFeedbackRepository:
    return InMemoryFeedbackRepository()


@pytest.fixture
def clock():
    """Mutable clock: advance with ``clock.now += seconds``."""

    class _Clock:
        now = 1_700_000_000.0

        def __call__(self) -> float:
            return self.now

    return _Clock()


@pytest.fixture
async def orchestrator(connected_store, completion, repository, clock) -> FeedbackOrchestrator:
    return FeedbackOrchestrator(
        connected_store,
        make_client(completion),
        repository,
        freshness_seconds=300,
        clock=clock,
    )
