"""
Rank aggregator and intersection classifier.

Merges per-variant hit lists into one unified, de-duplicated table:
- ranks: {variant_label: 1-based rank} for every variant the item appeared in
- found_in_variants: the labels of that map, in variant order
- intersection_type: I1 / I2 / I3 by number of variants (NONE is reserved
  for out-of-band items that never took part in aggregation)
- score: reciprocal rank fusion, sum over variants of 1 / (k + rank)

Reciprocal rank fusion follows the usual hybrid-retrieval formulation. Each
extra variant adds a strictly positive term, so at equal ranks an item found
in more variants always scores higher.

Shortlist:
1. all I2/I3 items by score, capped (default 25)
2. if there are none, the top-scored items overall (default 15)
Order everywhere: score desc, best rank asc, identifier asc.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, computed_field, model_validator

from src.search.bundle import VARIANT_ORDER
from src.search.normalizer import ContentType, PatentHit, ScholarHit
from src.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_RRF_K = 60
DEFAULT_INTERSECTION_CAP = 25
DEFAULT_FALLBACK_CAP = 15


class IntersectionType(str, Enum):
    """How many variants surfaced an item."""

    NONE = "NONE"
    I1 = "I1"
    I2 = "I2"
    I3 = "I3"

    @classmethod
    def from_count(cls, count: int) -> "IntersectionType":
        if count <= 0:
            return cls.NONE
        return cls(f"I{min(count, 3)}")

    @property
    def variant_count(self) -> int:
        return 0 if self is IntersectionType.NONE else int(self.value[1])


MULTI_VARIANT = frozenset({IntersectionType.I2, IntersectionType.I3})


class UnifiedResult(BaseModel):
    """One row of the unified result table."""

    identifier: str
    content_type: ContentType
    title: str = ""
    abstract: str = ""
    link: str | None = None
    ranks: dict[str, int] = Field(default_factory=dict, description="Rank per variant label")
    intersection_type: IntersectionType = IntersectionType.NONE
    score: float = 0.0
    shortlisted: bool = False
    relevance: int | None = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def _check_intersection(self) -> "UnifiedResult":
        if self.intersection_type.variant_count != len(self.ranks):
            raise ValueError(
                f"intersection_type {self.intersection_type.value} does not match "
                f"{len(self.ranks)} variant rank(s)"
            )
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def found_in_variants(self) -> list[str]:
        return sort_labels(self.ranks)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def min_rank(self) -> int | None:
        return min(self.ranks.values()) if self.ranks else None

    def sort_key(self) -> tuple[float, int, str]:
        best = self.min_rank if self.min_rank is not None else 10**9
        return (-self.score, best, self.identifier)

    def to_row(self) -> dict[str, object]:
        """Column mapping for unified_results."""
        return {
            "identifier": self.identifier,
            "content_type": self.content_type.value,
            "title": self.title,
            "abstract": self.abstract,
            "link": self.link,
            "ranks": self.ranks,
            "found_in_variants": self.found_in_variants,
            "intersection_type": self.intersection_type.value,
            "score": self.score,
            "min_rank": self.min_rank,
            "shortlisted": 1 if self.shortlisted else 0,
            "relevance": self.relevance,
        }


def sort_labels(labels: dict[str, int] | list[str] | set[str]) -> list[str]:
    """Variant labels in canonical order (unknown labels last, alphabetically)."""
    return sorted(
        labels,
        key=lambda label: (VARIANT_ORDER.index(label) if label in VARIANT_ORDER else len(VARIANT_ORDER), label),
    )


def rrf_score(ranks: dict[str, int], k: int = DEFAULT_RRF_K) -> float:
    """Reciprocal rank fusion score."""
    return sum(1.0 / (k + rank) for rank in ranks.values())


class RankAggregator:
    """Builds the unified result table and the shortlist."""

    def __init__(
        self,
        *,
        rrf_k: int = DEFAULT_RRF_K,
        intersection_cap: int = DEFAULT_INTERSECTION_CAP,
        fallback_cap: int = DEFAULT_FALLBACK_CAP,
    ):
        self._k = rrf_k
        self._intersection_cap = intersection_cap
        self._fallback_cap = fallback_cap

    def aggregate(self, hits_by_variant: dict[str, list[PatentHit | ScholarHit]]) -> list[UnifiedResult]:
        """Merge per-variant hits into sorted, shortlisted unified results.

        Args:
            hits_by_variant: Normalized hits of each succeeded variant.

        Returns:
            Unified results ordered by score desc, best rank asc, identifier asc.
        """
        merged: dict[str, dict[str, object]] = {}

        for label in sort_labels(list(hits_by_variant)):
            for hit in hits_by_variant[label]:
                entry = merged.get(hit.identifier)
                if entry is None:
                    entry = {"hit": hit, "ranks": {}}
                    merged[hit.identifier] = entry
                ranks: dict[str, int] = entry["ranks"]  # type: ignore[assignment]
                # Keep the best rank if a label repeats an identifier
                if label not in ranks or hit.rank < ranks[label]:
                    ranks[label] = hit.rank
                # Prefer the richest metadata seen
                current: PatentHit | ScholarHit = entry["hit"]  # type: ignore[assignment]
                if len(hit.abstract) > len(current.abstract):
                    entry["hit"] = hit

        results = []
        for identifier, entry in merged.items():
            hit: PatentHit | ScholarHit = entry["hit"]  # type: ignore[assignment]
            ranks = {label: entry["ranks"][label] for label in sort_labels(entry["ranks"])}  # type: ignore[index]
            results.append(
                UnifiedResult(
                    identifier=identifier,
                    content_type=hit.content_type,
                    title=hit.title,
                    abstract=hit.abstract,
                    link=hit.link,
                    ranks=ranks,
                    intersection_type=IntersectionType.from_count(len(ranks)),
                    score=rrf_score(ranks, self._k),
                )
            )

        results.sort(key=UnifiedResult.sort_key)
        self.shortlist(results)

        logger.info(
            "Results aggregated",
            unique=len(results),
            i3=sum(1 for r in results if r.intersection_type == IntersectionType.I3),
            i2=sum(1 for r in results if r.intersection_type == IntersectionType.I2),
            shortlisted=sum(1 for r in results if r.shortlisted),
        )
        return results

    def shortlist(self, results: list[UnifiedResult]) -> list[UnifiedResult]:
        """Mark and return the shortlist. ``results`` must already be sorted.

        NONE items are never shortlisted.
        """
        for result in results:
            result.shortlisted = False

        intersecting = [r for r in results if r.intersection_type in MULTI_VARIANT]
        if intersecting:
            selected = intersecting[: self._intersection_cap]
        else:
            eligible = [r for r in results if r.intersection_type != IntersectionType.NONE]
            selected = eligible[: self._fallback_cap]

        for result in selected:
            result.shortlisted = True
        return selected
