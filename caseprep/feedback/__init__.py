"""Feedback domain: models and the repository interface."""

from caseprep.feedback.models import (
    AIFeedback,
    DrillResponse,
    Evaluation,
    FeedbackCategory,
    FeedbackPatch,
    FeedbackPoint,
    FeedbackRequest,
    FeedbackSeverity,
    FeedbackType,
    ResponseMetric,
)
from caseprep.feedback.repository import FeedbackRepository, InMemoryFeedbackRepository

__all__ = [
    "AIFeedback",
    "DrillResponse",
    "Evaluation",
    "FeedbackCategory",
    "FeedbackPatch",
    "FeedbackPoint",
    "FeedbackRequest",
    "FeedbackSeverity",
    "FeedbackType",
    "ResponseMetric",
    "FeedbackRepository",
    "InMemoryFeedbackRepository",
]
