"""Pydantic schemas for learner snapshots, diagnosis replies and helper utilities."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Dict, List, Literal, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

__all__ = [
    "MasteryRecordSnapshot",
    "LegacyTierProgress",
    "ReviewStateSnapshot",
    "LearnerSnapshot",
    "MisconceptionEntry",
    "MisconceptionCatalog",
    "DiagnosisOutput",
    "parse_json_safe",
]


def _as_utc(value: datetime | None) -> datetime | None:
    """Naive timestamps in stored snapshots are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MasteryRecordSnapshot(BaseModel):
    """Persisted form of a single skill's mastery record."""

    state: Literal["new", "learning", "mastered", "rusty"] = "new"
    current_tier: Literal["learn", "prove"] = "learn"
    total_attempts: int = Field(default=0, ge=0)
    correct_count: int = Field(default=0, ge=0)
    speed_scores: List[float] = Field(
        default_factory=list,
        description="Rolling window of per-answer speed scores, oldest first.",
    )
    speed_window: int = Field(default=10, ge=1)
    streak: int = Field(default=0, ge=0)
    streak_cap: int = Field(default=8, ge=0)
    mastered_at: datetime | None = None
    rusty_at: datetime | None = None
    misconception_penalty: int = Field(
        default=0,
        ge=0,
        description="Extra correct answers required before the current tier completes.",
    )

    @field_validator("mastered_at", "rusty_at")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class LegacyTierProgress(BaseModel):
    """Tier counters as stored by snapshots that predate mastery records."""

    current_tier: Literal["learn", "prove"] = "learn"
    total_attempts: int = Field(default=0, ge=0)
    correct_count: int = Field(default=0, ge=0)


class ReviewStateSnapshot(BaseModel):
    stage: int = Field(default=0, ge=0, le=5)
    consecutive_hits: int = Field(default=0, ge=0)
    graduated: bool = False
    next_due: datetime
    last_review: datetime | None = None

    @field_validator("next_due", "last_review")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class LearnerSnapshot(BaseModel):
    """Learner state handed over by the persistence collaborator.

    ``mastery`` is ``None`` for legacy snapshots, which carry ``tier_progress``
    and ``mastered`` instead. ``spaced_repetition`` is ``None`` when the
    snapshot was written before review scheduling existed.
    """

    version: int = 1
    mastery: Dict[str, MasteryRecordSnapshot] | None = None
    tier_progress: Dict[str, LegacyTierProgress] = Field(default_factory=dict)
    mastered: List[str] = Field(default_factory=list)
    spaced_repetition: Dict[str, ReviewStateSnapshot] | None = None


class MisconceptionEntry(BaseModel):
    id: str
    strand: str
    label: str
    description: str
    examples: List[str] = Field(default_factory=list)


class MisconceptionCatalog(BaseModel):
    version: str | None = None
    misconceptions: List[MisconceptionEntry] = Field(default_factory=list)


class DiagnosisOutput(BaseModel):
    """Structured reply expected from the misconception diagnoser."""

    misconception_id: str | None = Field(
        default=None,
        description="Identifier from the supplied candidate list, or null when nothing matches.",
    )
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = Field(default="", description="Short justification for the classification.")


_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model``, extracting an embedded JSON object if needed.

    Model replies often wrap the object in prose or code fences; only leading
    noise is tolerated, trailing content after the object is rejected.
    """

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:].strip().strip("`").strip()
    if trailing:
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except ValidationError:
        if first_error:
            raise first_error
        raise
