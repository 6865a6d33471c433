"""Structured dream analysis schema and response parsing.

Generative models are asked for a single JSON object but often wrap it
in prose or Markdown fences. Parsing is two-stage: a strict parse of the
whole body first, then a scan for balanced top-level ``{...}`` spans.
Whatever is found must then validate against ``DreamAnalysis``; anything
else is a contract error, never a partial result.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class AnalysisParseError(Exception):
    """Raised when a model response has no valid analysis payload."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class Emotions(BaseModel):
    """Primary and secondary emotions detected in the dream."""

    model_config = ConfigDict(extra="allow")

    primary: list[str]
    secondary: list[str]

    @field_validator("primary", "secondary")
    @classmethod
    def strip_empty(cls, v: list[str]) -> list[str]:
        return [e.strip() for e in v if e and e.strip()]


class Symbol(BaseModel):
    """A dream symbol with the model's confidence in it."""

    model_config = ConfigDict(extra="allow")

    item: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    interpretation: str = ""


class DreamAnalysis(BaseModel):
    """The fixed-schema document produced by the analysis step.

    Only the fields the pipeline relies on are declared; the rest of the
    model's answer (Jungian and cognitive sections, narrative structure,
    and so on) is preserved as extra fields and stored untouched.
    """

    model_config = ConfigDict(extra="allow")

    themes: list[str]
    emotions: Emotions
    symbols: list[Symbol]
    psychological_insights: str = ""
    questions_to_explore: list[str] = Field(default_factory=list)

    @field_validator("themes")
    @classmethod
    def strip_themes(cls, v: list[str]) -> list[str]:
        return [t.strip() for t in v if t and t.strip()]

    def to_document(self) -> dict[str, Any]:
        """Serialize for storage, including undeclared fields."""
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _balanced_object_spans(text: str) -> list[str]:
    """Return every balanced top-level ``{...}`` span in ``text``.

    Quotes are only tracked inside a span, so apostrophes in surrounding
    prose do not throw the scanner off.
    """
    spans: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if depth > 0 and in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append(text[start : i + 1])
        elif ch == '"' and depth > 0:
            in_string = True

    return spans


def extract_json_object(text: str) -> dict[str, Any]:
    """Locate the JSON object in a model response.

    Raises:
        AnalysisParseError: If no span parses as a JSON object.
    """
    if not text or not text.strip():
        raise AnalysisParseError("Empty analysis response")

    try:
        value = json.loads(text.strip())
    except json.JSONDecodeError:
        value = None
    if isinstance(value, dict):
        return value

    # Longest first: the analysis object dwarfs any stray braces in prose
    for span in sorted(_balanced_object_spans(text), key=len, reverse=True):
        try:
            value = json.loads(span)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value

    raise AnalysisParseError("No JSON object found in analysis response")


def parse_analysis(text: str) -> DreamAnalysis:
    """Extract and validate a DreamAnalysis from a model response.

    Raises:
        AnalysisParseError: If extraction or schema validation fails.
    """
    payload = extract_json_object(text)
    try:
        return DreamAnalysis.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise AnalysisParseError(
            f"Analysis response does not match schema (invalid: {', '.join(fields)})"
        ) from exc
