"""
Feedback orchestrator.

Owns the request lifecycle for AI feedback: validation, the evaluation
and narrative provider calls, persistence through the repository, and
the cache entry lifecycle (populate on write, repopulate on cold read,
invalidate on update).

Generation for a given attempt is deduplicated: while one generation is
in flight, later callers for the same attempt await its result.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from caseprep.ai.client import ResilientClient
from caseprep.ai.prompts import (
    build_evaluation_messages,
    build_narrative_prompt,
    parse_evaluation,
)
from caseprep.cache.store import CacheStore
from caseprep.exceptions import (
    ConfigurationError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from caseprep.feedback.models import (
    AIFeedback,
    DrillResponse,
    Evaluation,
    FeedbackPatch,
    FeedbackRequest,
    FeedbackType,
)
from caseprep.feedback.repository import FeedbackRepository

logger = logging.getLogger(__name__)


class GenerationState(str, Enum):
    """Lifecycle of a single generation request."""

    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    EVALUATING = "EVALUATING"
    NARRATING = "NARRATING"
    PERSISTED = "PERSISTED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class _KeyedLocks:
    """Per-key asyncio locks, discarded once no task holds or awaits them."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class FeedbackOrchestrator:
    """Generate, persist, cache and serve AI feedback records.

    Args:
        cache: Connected cache store shared with the rest of the process.
        client: Resilient completion client for both provider calls.
        repository: Durable feedback store.
        freshness_seconds: Maximum age of a cache entry served by :meth:`get`.
        cache_category: TTL category used for feedback entries.
        clock: Time source in epoch seconds (tests override it).

    Raises:
        ConfigurationError: If ``cache_category`` is not registered with
            the cache store.
    """

    def __init__(
        self,
        cache: CacheStore,
        client: ResilientClient,
        repository: FeedbackRepository,
        *,
        freshness_seconds: float = 300,
        cache_category: str = "feedback",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if cache_category not in cache.categories:
            raise ConfigurationError(
                f"Cache category '{cache_category}' has no registered TTL",
                details={"category": cache_category, "registered": sorted(cache.categories)},
            )
        self._cache = cache
        self._client = client
        self._repository = repository
        self._freshness_seconds = freshness_seconds
        self._cache_category = cache_category
        self._clock = clock
        self._inflight: Dict[str, "asyncio.Task[AIFeedback]"] = {}
        self._inflight_lock = asyncio.Lock()
        self._record_locks = _KeyedLocks()

    # ── Generation ───────────────────────────

    async def generate(
        self,
        attempt_id: Any,
        type: Union[FeedbackType, str],
        response: Union[DrillResponse, Dict[str, Any]],
    ) -> AIFeedback:
        """Generate feedback for an attempt.

        Concurrent calls for the same attempt share one generation.

        Args:
            attempt_id: UUID of the attempt.
            type: ``DRILL`` or ``SIMULATION``.
            response: ``{content, metrics}`` submission.

        Returns:
            The persisted feedback record.

        Raises:
            ValidationError: If the request is malformed (no provider call
                is made).
            Exception: The provider failure once retries are exhausted;
                nothing is persisted in that case.
        """
        request = self._validate_request(attempt_id, type, response)
        key = str(request.attempt_id)

        async with self._inflight_lock:
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.ensure_future(self._run_generation(request))
                self._inflight[key] = task
                task.add_done_callback(lambda t, k=key: self._forget(k, t))
            else:
                logger.info(
                    "Joining in-flight generation",
                    extra={"attempt_id": key},
                )

        # Shielded so one cancelled caller does not cancel the others
        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Task[AIFeedback]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _validate_request(
        self,
        attempt_id: Any,
        type: Union[FeedbackType, str],
        response: Union[DrillResponse, Dict[str, Any]],
    ) -> FeedbackRequest:
        self._transition(attempt_id, GenerationState.RECEIVED)
        try:
            request = FeedbackRequest.parse(
                {"attempt_id": attempt_id, "type": type, "response": response}
            )
        except ValidationError:
            self._transition(attempt_id, GenerationState.REJECTED)
            raise
        self._transition(request.attempt_id, GenerationState.VALIDATED)
        return request

    async def _run_generation(self, request: FeedbackRequest) -> AIFeedback:
        attempt_id = str(request.attempt_id)

        self._transition(attempt_id, GenerationState.EVALUATING)
        messages = build_evaluation_messages(request)
        try:
            evaluation: Evaluation = await self._client.send(
                messages[0]["content"],
                {"messages": messages},
                parse=parse_evaluation,
                label="evaluation",
            )
        except Exception:
            self._transition(attempt_id, GenerationState.FAILED, step="evaluation")
            raise

        self._transition(attempt_id, GenerationState.NARRATING)
        try:
            summary: str = await self._client.send(
                build_narrative_prompt(evaluation), label="narrative"
            )
        except Exception:
            # The evaluation is discarded; the caller retries the whole request
            self._transition(attempt_id, GenerationState.FAILED, step="narrative")
            raise

        feedback = AIFeedback(
            attempt_id=attempt_id,
            type=request.type,
            overall_score=evaluation.score,
            feedback_points=evaluation.feedback_points,
            strengths=evaluation.strengths,
            improvements=evaluation.improvements,
            summary=summary,
        )
        saved = await self._repository.save(feedback)
        await self._populate_cache(saved, best_effort=True)

        self._transition(attempt_id, GenerationState.PERSISTED, feedback_id=saved.id)
        return saved

    # ── Reads ────────────────────────────────

    async def get(self, feedback_id: str) -> Optional[AIFeedback]:
        """Return feedback by id, serving fresh cache entries first.

        Args:
            feedback_id: Feedback record identifier.

        Returns:
            The record, or ``None`` if the repository has no such id.
        """
        self._require_id(feedback_id)

        cached = await self._read_cache(feedback_id)
        if cached is not None:
            return cached

        async with self._record_locks.hold(feedback_id):
            feedback = await self._repository.find_by_id(feedback_id)
            if feedback is None:
                logger.debug("Feedback not found", extra={"feedback_id": feedback_id})
                return None
            await self._populate_cache(feedback)
        return feedback

    async def get_by_attempt(self, attempt_id: Any) -> List[AIFeedback]:
        """Return all feedback for an attempt, newest first.

        Raises:
            ValidationError: If ``attempt_id`` is not a UUID.
        """
        try:
            canonical = str(uuid.UUID(str(attempt_id)))
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                "Invalid attempt ID format", details={"attempt_id": str(attempt_id)}
            ) from exc
        records = await self._repository.find_by_attempt(canonical)
        return sorted(records, key=lambda f: f.created_at, reverse=True)

    # ── Updates ──────────────────────────────

    async def update(
        self,
        feedback_id: str,
        patch: Union[FeedbackPatch, Dict[str, Any]],
    ) -> AIFeedback:
        """Apply *patch* to an existing record and invalidate its cache entry.

        Returns:
            The updated record as stored by the repository.

        Raises:
            ValidationError: If the id or patch is malformed.
            NotFoundError: If no record exists for ``feedback_id``.
        """
        self._require_id(feedback_id)
        if not isinstance(patch, FeedbackPatch):
            patch = FeedbackPatch.parse(patch)

        async with self._record_locks.hold(feedback_id):
            existing = await self._repository.find_by_id(feedback_id)
            if existing is None:
                raise NotFoundError("Feedback not found", details={"feedback_id": feedback_id})
            await self._repository.update(feedback_id, patch)
            await self._cache.delete(feedback_id)
            updated = await self._repository.find_by_id(feedback_id)

        if updated is None:
            raise NotFoundError("Feedback not found", details={"feedback_id": feedback_id})
        logger.info(
            "Feedback updated",
            extra={"feedback_id": feedback_id, "fields": sorted(patch.changes())},
        )
        return updated

    # ── Cache helpers ────────────────────────

    async def _read_cache(self, feedback_id: str) -> Optional[AIFeedback]:
        entry = await self._cache.get(feedback_id)
        if not isinstance(entry, dict):
            return None
        cached_at = entry.get("cached_at")
        if not isinstance(cached_at, (int, float)):
            return None
        if self._clock() - cached_at >= self._freshness_seconds:
            logger.debug("Cache entry stale", extra={"feedback_id": feedback_id})
            return None
        try:
            return AIFeedback.model_validate(entry.get("data"))
        except PydanticValidationError as exc:
            logger.warning(
                "Cached feedback failed validation",
                extra={"feedback_id": feedback_id, "error": str(exc)},
            )
            return None

    async def _populate_cache(self, feedback: AIFeedback, *, best_effort: bool = False) -> None:
        entry = {"data": feedback.to_json_dict(), "cached_at": self._clock()}
        try:
            await self._cache.set(feedback.id, entry, self._cache_category)
        except TransientError as exc:
            if not best_effort:
                raise
            # The record is already persisted; the next get() repopulates
            logger.warning(
                "Cache populate failed",
                extra={"feedback_id": feedback.id, "error": str(exc)},
            )

    # ── Misc ─────────────────────────────────

    @staticmethod
    def _require_id(feedback_id: str) -> None:
        if not isinstance(feedback_id, str) or not feedback_id.strip():
            raise ValidationError("Feedback ID must not be empty")

    @staticmethod
    def _transition(attempt_id: Any, state: GenerationState, **extra: Any) -> None:
        level = logging.WARNING if state in (GenerationState.REJECTED, GenerationState.FAILED) else logging.INFO
        logger.log(
            level,
            "Feedback generation %s",
            state.value,
            extra={"attempt_id": str(attempt_id), "state": state.value, **extra},
        )
