"""
Result normalizer.

Maps raw provider items to canonical hit records keyed by a stable
identifier:
- patents: publication number (e.g. "US 2020-0123456 A1" -> "US20200123456A1")
- scholarly items: "scholar:" + DOI, result_id, normalized link or title

Canonicalisation is idempotent: a canonical identifier maps to itself, so
re-normalizing a stored payload always yields the same key.
"""

import re
from enum import Enum
from typing import Annotated, Any, Literal
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field

from src.search.provider import SearchEngine, SearchResponse
from src.utils.logging import get_logger

logger = get_logger(__name__)

SCHOLAR_PREFIX = "scholar:"

_DOI_PATTERN = re.compile(r"10\.\d{4,9}/[^\s?#&\"'<>]+", re.IGNORECASE)
_LANG_SUFFIX = re.compile(r"/[a-z]{2}$", re.IGNORECASE)
_ID_SEPARATORS = re.compile(r"[\s\-_,./]+")
_TITLE_NOISE = re.compile(r"[^\w\s]+")


class ContentType(str, Enum):
    """Content-type tag of a unified result."""

    PATENT = "PATENT"
    SCHOLAR = "SCHOLAR"


# ============================================================================
# Hit Records
# ============================================================================


class PatentHit(BaseModel):
    """One patent in one variant's result list."""

    model_config = ConfigDict(frozen=True)

    content_type: Literal[ContentType.PATENT] = ContentType.PATENT
    identifier: str = Field(..., description="Canonical publication number")
    rank: int = Field(..., ge=1, description="1-based position in the variant list")
    title: str = ""
    abstract: str = ""
    link: str | None = None
    pdf_link: str | None = None
    assignee: str | None = None
    inventor: str | None = None
    priority_date: str | None = None
    publication_date: str | None = None
    provider_id: str | None = Field(default=None, description="Provider's own patent_id, e.g. patent/US123/en")


class ScholarHit(BaseModel):
    """One scholarly article in one variant's result list."""

    model_config = ConfigDict(frozen=True)

    content_type: Literal[ContentType.SCHOLAR] = ContentType.SCHOLAR
    identifier: str = Field(..., description="'scholar:'-prefixed canonical identifier")
    rank: int = Field(..., ge=1)
    title: str = ""
    abstract: str = Field(default="", description="Snippet; scholar search has no full abstract")
    link: str | None = None
    doi: str | None = None
    result_id: str | None = None
    publication_info: str | None = None
    cited_by_count: int | None = None


NormalizedHit = Annotated[PatentHit | ScholarHit, Field(discriminator="content_type")]


class PatentDetailProjection(BaseModel):
    """Normalized view of a patent detail payload."""

    title: str | None = None
    abstract: str | None = None
    claims: list[str] = Field(default_factory=list)
    claims_count: int = 0
    cpcs: list[str] = Field(default_factory=list)
    ipcs: list[str] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)
    inventors: list[str] = Field(default_factory=list)
    publication_date: str | None = None
    priority_date: str | None = None
    pdf_link: str | None = None
    has_citations: bool = False


# ============================================================================
# Identifier Canonicalisation
# ============================================================================


def canonicalize_patent_id(raw: str) -> str:
    """Collapse the provider's patent identifier encodings to one form.

    Handles "patent/US1234567B1/en", "us 2020-0123456 a1", "US2020/0123456".
    Scholarly identifiers pass through untouched.
    """
    value = (raw or "").strip()
    if not value or value.startswith(SCHOLAR_PREFIX):
        return value

    if value.lower().startswith("patent/"):
        value = value[len("patent/") :]
    value = _LANG_SUFFIX.sub("", value)

    return _ID_SEPARATORS.sub("", value).upper()


def extract_doi(*candidates: str | None) -> str | None:
    """First DOI found in the given strings (lower-cased)."""
    for candidate in candidates:
        if not candidate:
            continue
        match = _DOI_PATTERN.search(candidate)
        if match:
            return match.group(0).rstrip(".").lower()
    return None


def normalize_link(link: str) -> str:
    """Lower-case scheme and host, drop fragment and trailing slash."""
    parts = urlsplit(link.strip())
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def normalize_title(title: str) -> str:
    return " ".join(_TITLE_NOISE.sub(" ", title.lower()).split())


def canonicalize_scholar_id(item: dict[str, Any]) -> str:
    """Scholarly identifier from the strongest available key.

    Order: DOI, provider result_id, normalized link, normalized title.
    Returns "" when nothing usable is present.
    """
    existing = item.get("identifier")
    if isinstance(existing, str) and existing.startswith(SCHOLAR_PREFIX):
        return existing

    doi = extract_doi(item.get("doi"), item.get("link"))
    if doi:
        return f"{SCHOLAR_PREFIX}doi:{doi}"

    result_id = item.get("result_id")
    if isinstance(result_id, str) and result_id.strip():
        return f"{SCHOLAR_PREFIX}rid:{result_id.strip()}"

    link = item.get("link")
    if isinstance(link, str) and link.strip():
        return f"{SCHOLAR_PREFIX}url:{normalize_link(link)}"

    title = item.get("title")
    if isinstance(title, str) and normalize_title(title):
        return f"{SCHOLAR_PREFIX}title:{normalize_title(title)}"

    return ""


# ============================================================================
# Item Normalization
# ============================================================================


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _optional_text(value: Any) -> str | None:
    text = _text(value)
    return text or None


def normalize_patent_item(item: dict[str, Any], rank: int) -> PatentHit | None:
    """Normalize one google_patents item. Returns None if it has no identifier."""
    raw_id = _text(item.get("publication_number")) or _text(item.get("patent_id"))
    identifier = canonicalize_patent_id(raw_id)
    if not identifier:
        return None

    return PatentHit(
        identifier=identifier,
        rank=rank,
        title=_text(item.get("title")),
        abstract=_text(item.get("snippet")) or _text(item.get("abstract")),
        link=_optional_text(item.get("link")),
        pdf_link=_optional_text(item.get("pdf")),
        assignee=_optional_text(item.get("assignee")),
        inventor=_optional_text(item.get("inventor")),
        priority_date=_optional_text(item.get("priority_date")),
        publication_date=_optional_text(item.get("publication_date")),
        provider_id=_optional_text(item.get("patent_id")),
    )


def normalize_scholar_item(item: dict[str, Any], rank: int) -> ScholarHit | None:
    """Normalize one google_scholar item. Returns None if it has no identifier."""
    identifier = canonicalize_scholar_id(item)
    if not identifier:
        return None

    publication_info = item.get("publication_info")
    summary = publication_info.get("summary") if isinstance(publication_info, dict) else publication_info

    cited_by = (item.get("inline_links") or {}).get("cited_by") or item.get("cited_by") or {}
    cited_total = cited_by.get("total") if isinstance(cited_by, dict) else None

    return ScholarHit(
        identifier=identifier,
        rank=rank,
        title=_text(item.get("title")),
        abstract=_text(item.get("snippet")),
        link=_optional_text(item.get("link")),
        doi=extract_doi(item.get("doi"), item.get("link")),
        result_id=_optional_text(item.get("result_id")),
        publication_info=_optional_text(summary),
        cited_by_count=cited_total if isinstance(cited_total, int) else None,
    )


def normalize_response(response: SearchResponse) -> list[PatentHit | ScholarHit]:
    """Normalize a variant's result list.

    Ranks are 1-based list positions. If the same canonical identifier shows
    up twice in one list, the better (first) rank is kept.
    """
    scholar = response.engine == SearchEngine.GOOGLE_SCHOLAR
    hits: list[PatentHit | ScholarHit] = []
    seen: set[str] = set()
    dropped = 0

    for position, item in enumerate(response.items, start=1):
        hit = normalize_scholar_item(item, position) if scholar else normalize_patent_item(item, position)
        if hit is None:
            dropped += 1
            continue
        if hit.identifier in seen:
            continue
        seen.add(hit.identifier)
        hits.append(hit)

    if dropped:
        logger.debug("Dropped items without identifier", engine=response.engine.value, count=dropped)
    return hits


# ============================================================================
# Detail Projection
# ============================================================================


def is_valid_detail_payload(payload: dict[str, Any]) -> bool:
    """Whether a detail payload has the expected shape (not an error stub)."""
    if not isinstance(payload, dict) or payload.get("error"):
        return False
    return any(payload.get(key) for key in ("title", "abstract", "claims", "description"))


def _claim_texts(claims: Any) -> list[str]:
    if isinstance(claims, dict):
        claims = claims.get("claims", [])
    if isinstance(claims, str):
        return [claims] if claims.strip() else []
    if not isinstance(claims, list):
        return []

    texts = []
    for claim in claims:
        if isinstance(claim, str):
            texts.append(claim)
        elif isinstance(claim, dict):
            text = claim.get("text") or claim.get("claim")
            if isinstance(text, str):
                texts.append(text)
    return texts


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(v for v in values if v))


def project_patent_detail(payload: dict[str, Any]) -> PatentDetailProjection:
    """Build the normalized projection stored next to the raw payload."""
    cpcs: list[str] = []
    ipcs: list[str] = []
    for cls in payload.get("classifications") or []:
        if isinstance(cls, dict) and cls.get("code"):
            (cpcs if cls.get("is_cpc") else ipcs).append(str(cls["code"]))

    assignees: list[str] = []
    inventors: list[str] = []
    for app in payload.get("worldwide_applications") or []:
        if not isinstance(app, dict):
            continue
        assignees.extend(str(a) for a in app.get("assignees") or [])
        inventors.extend(str(i) for i in app.get("inventors") or [])

    claims = _claim_texts(payload.get("claims"))
    raw_claims = payload.get("claims")
    if isinstance(raw_claims, list):
        claims_count = len(raw_claims)
    elif isinstance(raw_claims, dict) and isinstance(raw_claims.get("claims"), list):
        claims_count = len(raw_claims["claims"])
    else:
        claims_count = 1 if raw_claims else 0

    return PatentDetailProjection(
        title=_optional_text(payload.get("title")),
        abstract=_optional_text(payload.get("abstract")),
        claims=claims,
        claims_count=claims_count,
        cpcs=_dedupe(cpcs),
        ipcs=_dedupe(ipcs),
        assignees=_dedupe(assignees),
        inventors=_dedupe(inventors),
        publication_date=_optional_text(payload.get("publication_date")),
        priority_date=_optional_text(payload.get("priority_date")),
        pdf_link=_optional_text(payload.get("pdf")),
        has_citations=bool(payload.get("patent_citations")),
    )
