"""
AI-assisted field suggestions using OpenAI structured output.

The model is asked for an opinion on one extracted value: is it plausible
for the field type, how confident is it, and what would it suggest instead.
The opinion is advisory. It feeds `field_confidence` and
`validation_suggestions`, never the extracted value itself.

Design:
  - JSON mode enforced (structured output, not free text)
  - No API key / no openai package / call failure → basic result (0.8)
  - Output that is not a JSON object → unparseable result (0.7)
"""

from __future__ import annotations

import json
import logging
import re

from .config import settings
from .models import FieldSuggestion

logger = logging.getLogger(__name__)

BASIC_SUGGESTION = FieldSuggestion(
    is_valid=True, confidence=0.8, suggestions=[], reasoning="Basic validation only"
)
UNPARSEABLE_SUGGESTION = FieldSuggestion(
    is_valid=True, confidence=0.7, suggestions=[], reasoning="Unable to parse AI response"
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n|\n```\s*$")


# ─── Prompt ──────────────────────────────────────────────────────────

SYSTEM_PROMPT = "You are a document validation expert. Always respond with valid JSON."

USER_PROMPT = """\
You are validating extracted document data.

Field: {field}
Type: {field_type}
Extracted Value: {value}
Context: {context}

Task:
1. Validate if the value seems correct for this field type
2. Calculate confidence score (0-1)
3. Suggest corrections if needed
4. Provide reasoning

Respond with JSON only:
{{
  "isValid": boolean,
  "confidence": number (0-1),
  "suggestions": string[],
  "reasoning": string
}}"""


def parse_suggestion(content: str | None) -> FieldSuggestion:
    """Turn raw model output into a FieldSuggestion (markdown fences tolerated)."""
    if not content:
        return UNPARSEABLE_SUGGESTION.model_copy(deep=True)
    cleaned = _FENCE_RE.sub("", content.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.error("Failed to parse AI response: %r", content[:200])
        return UNPARSEABLE_SUGGESTION.model_copy(deep=True)
    if not isinstance(data, dict):
        return UNPARSEABLE_SUGGESTION.model_copy(deep=True)

    try:
        confidence = min(1.0, max(0.0, float(data.get("confidence", 0.7))))
    except (TypeError, ValueError):
        confidence = 0.7
    suggestions = data.get("suggestions") or []
    if not isinstance(suggestions, list):
        suggestions = [suggestions]
    return FieldSuggestion(
        is_valid=bool(data.get("isValid", data.get("is_valid", True))),
        confidence=confidence,
        suggestions=[str(s) for s in suggestions],
        reasoning=str(data.get("reasoning", "")),
    )


def suggest_field(
    field: str,
    value: str,
    field_type: str = "text",
    context: str | None = None,
) -> FieldSuggestion:
    """Ask the model for an opinion on one extracted field value.

    Never raises: an unavailable model degrades to the basic result.
    """
    api_key = settings.OPENAI_API_KEY
    if not api_key:
        logger.info("No OPENAI_API_KEY set — basic field validation only")
        return BASIC_SUGGESTION.model_copy(deep=True)

    try:
        from openai import OpenAI

        client = OpenAI(api_key=api_key, timeout=settings.AI_TIMEOUT_SECONDS)

        response = client.chat.completions.create(
            model=settings.AI_MODEL,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": USER_PROMPT.format(
                        field=field,
                        field_type=field_type or "text",
                        value=value,
                        context=context or "None provided",
                    ),
                },
            ],
            response_format={"type": "json_object"},
        )

        suggestion = parse_suggestion(response.choices[0].message.content)
        logger.info("AI suggestion for %s: confidence %.2f", field, suggestion.confidence)
        return suggestion

    except ImportError:
        logger.warning("openai package not installed — pip install openai")
        return BASIC_SUGGESTION.model_copy(deep=True)
    except Exception as e:
        logger.error("AI field suggestion failed: %s", e)
        return BASIC_SUGGESTION.model_copy(deep=True)
