"""
Pydantic models for feedback requests and generated feedback records.

Attribute names are snake_case; the JSON transport form uses camelCase
(``attemptId``, ``overallScore``...).  Both spellings are accepted on
input.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from caseprep.exceptions import ValidationError


class FeedbackType(str, Enum):
    """Kind of attempt being evaluated."""

    DRILL = "DRILL"
    SIMULATION = "SIMULATION"


class FeedbackCategory(str, Enum):
    """Skill area a feedback point addresses."""

    STRUCTURE = "STRUCTURE"
    ANALYSIS = "ANALYSIS"
    CALCULATION = "CALCULATION"
    COMMUNICATION = "COMMUNICATION"
    SYNTHESIS = "SYNTHESIS"


class FeedbackSeverity(str, Enum):
    """Urgency ranking of a feedback point."""

    CRITICAL = "CRITICAL"
    IMPORTANT = "IMPORTANT"
    SUGGESTION = "SUGGESTION"


class _TransportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResponseMetric(_TransportModel):
    """A named numeric measurement attached to an attempt."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    value: float = Field(..., allow_inf_nan=False)


class DrillResponse(_TransportModel):
    """The candidate's submission.

    Attributes:
        content: Free-text answer (must contain non-whitespace).
        metrics: Ordered measurements recorded for the attempt.
    """

    model_config = ConfigDict(extra="forbid")

    content: str
    metrics: List[ResponseMetric] = Field(default_factory=list)

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be empty")
        return value


class FeedbackRequest(_TransportModel):
    """Caller-facing generation request.

    Attributes:
        attempt_id: UUID of the attempt being evaluated.
        type: DRILL or SIMULATION.
        response: The submission to evaluate.
    """

    model_config = ConfigDict(extra="forbid")

    attempt_id: uuid.UUID
    type: FeedbackType
    response: DrillResponse

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> "FeedbackRequest":
        """Validate raw input, raising the pipeline's ValidationError."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Invalid feedback request data",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc


class FeedbackPoint(_TransportModel):
    """One categorized, severity-tagged critique."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    category: FeedbackCategory
    severity: FeedbackSeverity
    message: str
    suggestion: str = ""

    @field_validator("category", "severity", mode="before")
    @classmethod
    def _upper_enum(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class Evaluation(_TransportModel):
    """Parsed result of the evaluation call."""

    score: float = Field(..., ge=0, le=100)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    feedback_points: List[FeedbackPoint] = Field(default_factory=list)


class AIFeedback(_TransportModel):
    """A generated evaluation of one attempt.

    Instances are frozen; changes go through :class:`FeedbackPatch`.

    Attributes:
        id: Feedback record identifier.
        attempt_id: Attempt the feedback belongs to.
        type: DRILL or SIMULATION.
        overall_score: Normalized score (0-100).
        feedback_points: Detailed critiques.
        strengths: Positive aspects of the attempt.
        improvements: Areas to work on.
        summary: Narrative feedback derived from the evaluation.
        created_at: UTC generation time.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    attempt_id: str
    type: FeedbackType
    overall_score: float = Field(..., ge=0, le=100)
    feedback_points: List[FeedbackPoint] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    summary: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json_dict(self) -> Dict[str, Any]:
        """Transport form: camelCase keys, JSON-native values."""
        return self.model_dump(mode="json", by_alias=True)


class FeedbackPatch(_TransportModel):
    """Partial update of an existing feedback record."""

    model_config = ConfigDict(extra="forbid")

    overall_score: Optional[float] = Field(default=None, ge=0, le=100)
    summary: Optional[str] = None
    strengths: Optional[List[str]] = None
    improvements: Optional[List[str]] = None
    feedback_points: Optional[List[FeedbackPoint]] = None

    @model_validator(mode="after")
    def _not_empty(self) -> "FeedbackPatch":
        if not any(getattr(self, name) is not None for name in self.model_fields_set):
            raise ValueError("patch must set at least one field")
        return self

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> "FeedbackPatch":
        """Validate raw input, raising the pipeline's ValidationError."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Invalid feedback update data",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly set on this patch, keyed by attribute name."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if getattr(self, name) is not None
        }

    def apply_to(self, feedback: AIFeedback) -> AIFeedback:
        """Return a copy of *feedback* with this patch applied."""
        return feedback.model_copy(update=self.changes())
