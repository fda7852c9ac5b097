"""
SQLAlchemy model for persisted feedback records.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import JSON, DateTime, Float, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from caseprep.db.engine import Base

_JSON = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FeedbackModel(Base):
    """Stored AI feedback for one drill or simulation attempt.

    Attributes:
        id: Feedback identifier (UUID string).
        attempt_id: Attempt the feedback belongs to.
        attempt_type: ``DRILL`` or ``SIMULATION``.
        score: Overall score (0-100).
        summary: Narrative feedback text.
        strengths: JSON array of strings.
        improvements: JSON array of strings.
        feedback_points: JSON array of feedback point objects.
        created_at: Generation timestamp.
    """

    __tablename__ = "feedback"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    attempt_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    attempt_type: Mapped[str] = mapped_column(String(16), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    strengths: Mapped[List[Any]] = mapped_column(_JSON, nullable=False, default=list)
    improvements: Mapped[List[Any]] = mapped_column(_JSON, nullable=False, default=list)
    feedback_points: Mapped[List[Dict[str, Any]]] = mapped_column(_JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
