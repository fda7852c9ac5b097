"""
Feedback repository interface and an in-memory implementation.

The orchestrator depends only on :class:`FeedbackRepository`; the SQL
adapter lives in :mod:`caseprep.db.repositories`.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Protocol, runtime_checkable

from caseprep.exceptions import NotFoundError
from caseprep.feedback.models import AIFeedback, FeedbackPatch

logger = logging.getLogger(__name__)


@runtime_checkable
class FeedbackRepository(Protocol):
    """Durable store for :class:`AIFeedback` records."""

    async def save(self, feedback: AIFeedback) -> AIFeedback:
        ...

    async def find_by_id(self, feedback_id: str) -> Optional[AIFeedback]:
        ...

    async def find_by_attempt(self, attempt_id: str) -> List[AIFeedback]:
        ...

    async def update(self, feedback_id: str, patch: FeedbackPatch) -> None:
        ...


class InMemoryFeedbackRepository:
    """Dict-backed repository for tests and local runs.

    Records are frozen pydantic models, so handing out the stored
    instance cannot leak mutations back into the store.
    """

    def __init__(self) -> None:
        self._records: Dict[str, AIFeedback] = {}
        self._lock = asyncio.Lock()
        self.calls: Dict[str, int] = {
            "save": 0,
            "find_by_id": 0,
            "find_by_attempt": 0,
            "update": 0,
        }

    async def save(self, feedback: AIFeedback) -> AIFeedback:
        async with self._lock:
            self.calls["save"] += 1
            self._records[feedback.id] = feedback
        logger.debug("Feedback saved", extra={"feedback_id": feedback.id})
        return feedback

    async def find_by_id(self, feedback_id: str) -> Optional[AIFeedback]:
        self.calls["find_by_id"] += 1
        return self._records.get(feedback_id)

    async def find_by_attempt(self, attempt_id: str) -> List[AIFeedback]:
        self.calls["find_by_attempt"] += 1
        return [r for r in self._records.values() if r.attempt_id == attempt_id]

    async def update(self, feedback_id: str, patch: FeedbackPatch) -> None:
        async with self._lock:
            self.calls["update"] += 1
            existing = self._records.get(feedback_id)
            if existing is None:
                raise NotFoundError("Feedback not found", details={"feedback_id": feedback_id})
            self._records[feedback_id] = patch.apply_to(existing)
        logger.debug("Feedback updated", extra={"feedback_id": feedback_id})
