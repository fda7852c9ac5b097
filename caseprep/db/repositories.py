"""
SQL-backed feedback repository.

Implements :class:`caseprep.feedback.repository.FeedbackRepository`
over the ``feedback`` table.
"""

from __future__ import annotations

import logging
from datetime import timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseprep.db.models import FeedbackModel
from caseprep.exceptions import NotFoundError
from caseprep.feedback.models import AIFeedback, FeedbackPatch, FeedbackPoint

logger = logging.getLogger(__name__)


def _to_row(feedback: AIFeedback) -> FeedbackModel:
    return FeedbackModel(
        id=feedback.id,
        attempt_id=feedback.attempt_id,
        attempt_type=feedback.type.value,
        score=feedback.overall_score,
        summary=feedback.summary,
        strengths=list(feedback.strengths),
        improvements=list(feedback.improvements),
        feedback_points=[p.model_dump(mode="json") for p in feedback.feedback_points],
        created_at=feedback.created_at,
    )


def _to_domain(row: FeedbackModel) -> AIFeedback:
    created_at = row.created_at
    # SQLite drops tzinfo; stored values are always UTC
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return AIFeedback(
        id=row.id,
        attempt_id=row.attempt_id,
        type=row.attempt_type,
        overall_score=row.score,
        summary=row.summary,
        strengths=list(row.strengths or []),
        improvements=list(row.improvements or []),
        feedback_points=[FeedbackPoint.model_validate(p) for p in row.feedback_points or []],
        created_at=created_at,
    )


class SqlFeedbackRepository:
    """Repository for the feedback table.

    Args:
        session_factory: Async session factory (see
            :func:`caseprep.db.engine.get_session_factory`).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(self, feedback: AIFeedback) -> AIFeedback:
        """Insert a feedback row and return the stored record."""
        async with self._session_factory() as session:
            row = _to_row(feedback)
            session.add(row)
            await session.commit()
            logger.info(
                "Feedback stored",
                extra={"feedback_id": feedback.id, "attempt_id": feedback.attempt_id},
            )
            return _to_domain(row)

    async def find_by_id(self, feedback_id: str) -> Optional[AIFeedback]:
        """Fetch a feedback row by id, or ``None``."""
        async with self._session_factory() as session:
            row = await session.get(FeedbackModel, feedback_id)
            return _to_domain(row) if row is not None else None

    async def find_by_attempt(self, attempt_id: str) -> List[AIFeedback]:
        """Fetch all feedback rows for an attempt, newest first."""
        async with self._session_factory() as session:
            stmt = (
                select(FeedbackModel)
                .where(FeedbackModel.attempt_id == attempt_id)
                .order_by(FeedbackModel.created_at.desc())
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_domain(row) for row in rows]

    async def update(self, feedback_id: str, patch: FeedbackPatch) -> None:
        """Apply *patch* to an existing row.

        Raises:
            NotFoundError: If no row exists for ``feedback_id``.
        """
        async with self._session_factory() as session:
            row = await session.get(FeedbackModel, feedback_id)
            if row is None:
                raise NotFoundError("Feedback not found", details={"feedback_id": feedback_id})
            updated = patch.apply_to(_to_domain(row))
            fresh = _to_row(updated)
            for column in ("score", "summary", "strengths", "improvements", "feedback_points"):
                setattr(row, column, getattr(fresh, column))
            await session.commit()
            logger.info(
                "Feedback row updated",
                extra={"feedback_id": feedback_id, "fields": sorted(patch.changes())},
            )
