"""
Prompt templates for the evaluation and narrative calls.
"""

import json
import logging
import re
from typing import Dict, List

from pydantic import ValidationError as PydanticValidationError

from caseprep.exceptions import MalformedResponseError
from caseprep.feedback.models import Evaluation, FeedbackRequest, FeedbackType

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_BASE = (
    "You are an expert consulting case interview evaluator with extensive "
    "experience at top firms like McKinsey, Bain, and BCG."
)

MAX_PROMPT_LENGTH = 4096

_RESPONSE_FORMAT = """
Respond with a single JSON object and nothing else:
{
  "score": <number 0-100>,
  "strengths": [<string>, ...],
  "improvements": [<string>, ...],
  "feedbackPoints": [
    {
      "category": "STRUCTURE" | "ANALYSIS" | "CALCULATION" | "COMMUNICATION" | "SYNTHESIS",
      "severity": "CRITICAL" | "IMPORTANT" | "SUGGESTION",
      "message": <string>,
      "suggestion": <string>
    }
  ]
}
""".strip()

EVALUATION_PROMPTS: Dict[FeedbackType, str] = {
    FeedbackType.DRILL: f"""
{SYSTEM_PROMPT_BASE}

Evaluate the candidate's drill response considering:
1. Structure and framework clarity
2. Analytical rigor and calculation accuracy
3. Assumption quality
4. Synthesis and recommendation support
5. Communication clarity

Provide specific examples from their response to support your evaluation.

{_RESPONSE_FORMAT}
""".strip(),
    FeedbackType.SIMULATION: f"""
{SYSTEM_PROMPT_BASE}

Evaluate the candidate's simulation outcome considering:
1. Hypothesis formation
2. Use of the reported metrics
3. Trade-off reasoning
4. Conclusion formation
5. Communication clarity

Assess how well they connected the simulation results to their decisions.

{_RESPONSE_FORMAT}
""".strip(),
}

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def _format_metrics(request: FeedbackRequest) -> str:
    if not request.response.metrics:
        return "None reported."
    return "\n".join(f"- {m.name}: {m.value:g}" for m in request.response.metrics)


def build_evaluation_messages(request: FeedbackRequest) -> List[Dict[str, str]]:
    """Build the chat messages for the evaluation call.

    Args:
        request: A validated feedback request.

    Returns:
        Ordered ``{role, content}`` messages: the type-specific system
        prompt followed by the candidate's response and metrics.
    """
    user_content = (
        f"Candidate response:\n{request.response.content}\n\n"
        f"Metrics:\n{_format_metrics(request)}"
    )
    return [
        {"role": "system", "content": EVALUATION_PROMPTS[request.type]},
        {"role": "user", "content": user_content},
    ]


def _render_narrative_prompt(score: float, strengths: List[str], improvements: List[str]) -> str:
    strength_lines = "\n".join(f"- {s}" for s in strengths) or "- None identified"
    improvement_lines = "\n".join(f"- {i}" for i in improvements) or "- None identified"
    return f"""
{SYSTEM_PROMPT_BASE}

Based on the following evaluation results:
Score: {score:g}/100

Strengths:
{strength_lines}

Areas for Improvement:
{improvement_lines}

Please generate detailed, actionable feedback that:
1. Acknowledges specific strengths with examples
2. Provides concrete improvement suggestions
3. Prioritizes feedback based on impact
4. Includes specific practice recommendations
5. Maintains an encouraging, constructive tone

Format the feedback in clear sections with bullet points for easy reading.
""".strip()


def build_narrative_prompt(evaluation: Evaluation) -> str:
    """Build the prompt for the narrative summary call.

    The lists come from the provider, so an oversized evaluation is
    trimmed rather than rejected: trailing items are dropped from the
    longer of the two lists until the prompt fits ``MAX_PROMPT_LENGTH``.
    """
    strengths = list(evaluation.strengths)
    improvements = list(evaluation.improvements)
    prompt = _render_narrative_prompt(evaluation.score, strengths, improvements)
    dropped = 0
    while len(prompt) > MAX_PROMPT_LENGTH and (strengths or improvements):
        if len(strengths) > len(improvements):
            strengths.pop()
        else:
            improvements.pop()
        dropped += 1
        prompt = _render_narrative_prompt(evaluation.score, strengths, improvements)

    if dropped:
        logger.warning(
            "Narrative prompt trimmed",
            extra={"items_dropped": dropped, "max_length": MAX_PROMPT_LENGTH},
        )
    return prompt


def parse_evaluation(text: str) -> Evaluation:
    """Parse the evaluation call's JSON content.

    Accepts a bare JSON object or one wrapped in a fenced code block.

    Raises:
        MalformedResponseError: If the content is not a valid evaluation.
    """
    match = _FENCED_JSON.search(text)
    raw = match.group(1) if match else text
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise MalformedResponseError(
            "Evaluation response is not valid JSON", details={"error": str(exc)}
        ) from exc
    if not isinstance(data, dict):
        raise MalformedResponseError("Evaluation response is not a JSON object")
    if "score" not in data and "overallScore" in data:
        data["score"] = data.pop("overallScore")
    try:
        return Evaluation.model_validate(data)
    except PydanticValidationError as exc:
        raise MalformedResponseError(
            "Evaluation response does not match the expected shape",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc
