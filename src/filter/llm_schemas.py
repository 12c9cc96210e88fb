"""Pydantic schemas for novelty assessment LLM output and records.

LLM output schemas are lenient:
- Missing optional fields get defaults
- Enum-like strings are normalized (case, spaces, hyphens)
- Invalid items in lists are skipped, not rejected
"""

import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class AssessmentStatus(str, Enum):
    """Lifecycle of a novelty assessment."""

    IN_PROGRESS = "IN_PROGRESS"
    NOVEL = "NOVEL"
    NOT_NOVEL = "NOT_NOVEL"
    DOUBT = "DOUBT"
    DOUBT_RESOLVED = "DOUBT_RESOLVED"
    FAILED = "FAILED"


# Only these unlock the PDF report
REPORTABLE_STATUSES = frozenset({AssessmentStatus.NOVEL, AssessmentStatus.NOT_NOVEL, AssessmentStatus.DOUBT_RESOLVED})


class Determination(str, Enum):
    NOVEL = "NOVEL"
    NOT_NOVEL = "NOT_NOVEL"
    DOUBT = "DOUBT"
    PARTIALLY_NOVEL = "PARTIALLY_NOVEL"


class Relevance(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ConfidenceLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


def _norm_token(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper().replace(" ", "_").replace("-", "_")
    return value


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return []


def dedupe(values: list[str]) -> list[str]:
    """Order-preserving, case-insensitive de-duplication."""
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        key = value.strip().lower()
        if key and key not in seen:
            seen.add(key)
            result.append(value.strip())
    return result


# ============================================================================
# Candidates
# ============================================================================


class InventionSummary(BaseModel):
    """What is being assessed."""

    title: str = Field(..., min_length=1)
    problem: str = ""
    solution: str = ""


class NoveltyCandidate(BaseModel):
    """One prior-art item sent to the screening stage."""

    identifier: str
    content_type: str = "PATENT"
    title: str
    abstract: str
    relevance: int | None = Field(default=None, description="Content relevance percent")
    found_in_variants: list[str] = Field(default_factory=list)
    intersection_type: str = "I1"
    score: float = 0.0
    link: str | None = None


# ============================================================================
# Stage 1 (screening)
# ============================================================================


class CandidateAssessment(BaseModel):
    """Per-candidate screening verdict."""

    publication_number: str = Field(..., min_length=1)
    relevance: Relevance = Relevance.LOW
    reasoning: str = ""

    @field_validator("publication_number", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        return str(v).strip() if v is not None else v

    @field_validator("relevance", mode="before")
    @classmethod
    def normalize_relevance(cls, v: Any) -> str:
        token = _norm_token(v)
        return token if token in Relevance.__members__ else Relevance.LOW.value


class Stage1Output(BaseModel):
    """Screening response for the whole candidate set."""

    overall_determination: Determination | None = None
    confidence: int | None = Field(default=None, ge=0, le=100)
    patent_assessments: list[CandidateAssessment] = Field(default_factory=list)
    novel_aspects: list[str] = Field(default_factory=list)
    non_novel_aspects: list[str] = Field(default_factory=list)
    summary_remarks: str = ""

    @field_validator("overall_determination", mode="before")
    @classmethod
    def normalize_determination(cls, v: Any) -> Any:
        token = _norm_token(v)
        return token if token in ("NOVEL", "NOT_NOVEL", "DOUBT") else None

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, v: Any) -> int | None:
        """Accept 0-1 fractions, percentages and numeric strings.

        Only values strictly between 0 and 1 are fractions; an integral 1 is 1%.
        """
        if v is None or isinstance(v, bool):
            return None
        try:
            value = float(str(v).strip().rstrip("%"))
        except ValueError:
            return None
        if not math.isfinite(value):
            return None
        if 0.0 < value < 1.0:
            value *= 100
        return max(0, min(100, round(value)))

    @field_validator("patent_assessments", mode="before")
    @classmethod
    def skip_invalid_items(cls, v: Any) -> list[Any]:
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict) and item.get("publication_number")]

    @field_validator("novel_aspects", "non_novel_aspects", mode="before")
    @classmethod
    def coerce_aspects(cls, v: Any) -> list[str]:
        return _string_list(v)


# ============================================================================
# Stage 2 (detailed comparison)
# ============================================================================


class Stage2Output(BaseModel):
    """Detailed comparison against one ambiguous candidate."""

    determination: Determination
    confidence_level: ConfidenceLevel = ConfidenceLevel.MEDIUM
    novel_aspects: list[str] = Field(default_factory=list)
    non_novel_aspects: list[str] = Field(default_factory=list)
    technical_reasoning: str = ""
    suggestions: str = ""

    @field_validator("determination", mode="before")
    @classmethod
    def normalize_determination(cls, v: Any) -> Any:
        token = _norm_token(v)
        if token not in ("NOVEL", "NOT_NOVEL", "PARTIALLY_NOVEL"):
            raise ValueError(f"unsupported stage-2 determination: {v!r}")
        return token

    @field_validator("confidence_level", mode="before")
    @classmethod
    def normalize_confidence(cls, v: Any) -> str:
        token = _norm_token(v)
        return token if token in ConfidenceLevel.__members__ else ConfidenceLevel.MEDIUM.value

    @field_validator("novel_aspects", "non_novel_aspects", mode="before")
    @classmethod
    def coerce_aspects(cls, v: Any) -> list[str]:
        return _string_list(v)

    @field_validator("suggestions", mode="before")
    @classmethod
    def join_suggestions(cls, v: Any) -> str:
        if isinstance(v, list):
            return "; ".join(_string_list(v))
        return v or ""


class Stage2Result(BaseModel):
    """Stage-2 outcome for one candidate, as persisted."""

    identifier: str
    status: str = Field(..., description="success | failed")
    output: Stage2Output | None = None
    error: str | None = None
