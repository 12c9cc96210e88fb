"""
Content relevance of a candidate against the bundle's search terms.

Display and prompt context only; it does not take part in rank fusion.

Scoring per term (synonyms count as the term):
- title contains the term: 3 points (once per term)
- each occurrence in the abstract: 1 point
relevance_percent = min(100, round(100 * total / (4 * number_of_terms)))
"""

import re
from dataclasses import dataclass, field

from src.search.bundle import SearchBundle

TITLE_WEIGHT = 3
# Title weight plus one expected abstract hit per term
MAX_POINTS_PER_TERM = 4
MIN_PHRASE_WORD_LENGTH = 3


@dataclass
class SearchTerms:
    """Terms extracted from a bundle with their synonym lists."""

    terms: list[str] = field(default_factory=list)
    synonyms: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class ContentRelevance:
    title_matches: int = 0
    abstract_matches: int = 0
    total_score: int = 0
    relevance_percent: int = 0
    matched_terms: list[str] = field(default_factory=list)


def extract_search_terms(bundle: SearchBundle) -> SearchTerms:
    """Collect lower-cased terms from the bundle.

    Sources: core concepts, phrase words longer than two characters,
    technical features and the first entry (canonical) of each synonym group.
    """
    terms: dict[str, None] = {}
    synonyms: dict[str, list[str]] = {}

    for concept in bundle.core_concepts:
        if concept.strip():
            terms[concept.strip().lower()] = None

    for phrase in bundle.phrases:
        for word in phrase.lower().split():
            if len(word) >= MIN_PHRASE_WORD_LENGTH:
                terms[word] = None

    for feature in bundle.technical_features:
        if feature.strip():
            terms[feature.strip().lower()] = None

    for group in bundle.synonym_groups:
        cleaned = [g.strip().lower() for g in group if g.strip()]
        if not cleaned:
            continue
        canonical, rest = cleaned[0], cleaned[1:]
        terms[canonical] = None
        synonyms[canonical] = rest

    return SearchTerms(terms=list(terms), synonyms=synonyms)


def score_content(title: str, abstract: str, search_terms: SearchTerms) -> ContentRelevance:
    """Score one candidate's title and abstract against the search terms."""
    if not search_terms.terms:
        return ContentRelevance()

    title_lower = (title or "").lower()
    abstract_lower = (abstract or "").lower()

    total = 0
    title_matches = 0
    abstract_matches = 0
    matched: list[str] = []

    for term in search_terms.terms:
        variants = [term, *search_terms.synonyms.get(term, [])]

        in_title = any(v and v in title_lower for v in variants)
        if in_title:
            total += TITLE_WEIGHT
            title_matches += 1

        occurrences = sum(len(re.findall(re.escape(v), abstract_lower)) for v in variants if v)
        total += occurrences
        abstract_matches += occurrences

        if in_title or occurrences:
            matched.append(term)

    max_score = len(search_terms.terms) * MAX_POINTS_PER_TERM
    percent = min(100, round(100 * total / max_score))

    return ContentRelevance(
        title_matches=title_matches,
        abstract_matches=abstract_matches,
        total_score=total,
        relevance_percent=percent,
        matched_terms=matched,
    )
