"""
Search bundle models, validation and lifecycle.

A bundle is the structured search plan derived from an invention
brief: a source summary, concept lists and exactly three query variants
(broad / baseline / narrow). Only an APPROVED bundle may be executed.

Validation is split in two:
- validate_bundle(): hard structural checks, all-or-nothing
- check_guardrails(): soft query-quality warnings, never blocking
"""

import hashlib
import json
import re
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.storage.database import Database, now_iso
from src.utils.errors import BundleValidationError, InvalidStateError, NotFoundError
from src.utils.logging import get_logger

logger = get_logger(__name__)

MAX_QUERY_LENGTH = 300
MAX_QUOTED_PHRASES = 2
MIN_OR_GROUPS = 2
ALLOWED_ENGINES = frozenset({"google_patents", "google_scholar"})


# ============================================================================
# Enums
# ============================================================================


class VariantLabel(str, Enum):
    """Query variant labels, in execution order."""

    BROAD = "broad"
    BASELINE = "baseline"
    NARROW = "narrow"


VARIANT_ORDER: tuple[str, ...] = tuple(v.value for v in VariantLabel)


class BundleStatus(str, Enum):
    """Bundle lifecycle status."""

    DRAFT = "DRAFT"
    READY_FOR_REVIEW = "READY_FOR_REVIEW"
    APPROVED = "APPROVED"
    ARCHIVED = "ARCHIVED"


EDITABLE_STATUSES = frozenset({BundleStatus.DRAFT, BundleStatus.READY_FOR_REVIEW})


# ============================================================================
# Bundle Models
# ============================================================================


class SourceSummary(BaseModel):
    """Invention summary the bundle was derived from."""

    title: str = Field(default="", description="Invention title")
    problem_statement: str = Field(default="", description="Problem addressed")
    solution_summary: str = Field(default="", description="Proposed solution")


class SpecLimit(BaseModel):
    """Numeric specification limit (e.g. operating temperature >= 40 C)."""

    quantity: str
    operator: str = Field(default="=", pattern=r"^(>|>=|<|<=|=)$")
    value: float
    unit: str = ""


class DateWindow(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str | None = Field(default=None, alias="from")
    to: str | None = None


class QueryVariant(BaseModel):
    """One query configuration within a bundle.

    Range checks live in validate_bundle() so they come back as itemized
    errors rather than a parse failure.
    """

    label: str = Field(..., description="broad | baseline | narrow")
    q: str = Field(default="", description="Query text")
    num: int = Field(default=20, description="Results per page")
    page: int = Field(default=1, description="1-based result page")
    notes: str = Field(default="", description="Author notes")


class SerpApiDefaults(BaseModel):
    engine: str | None = Field(default="google_patents", description="Default search engine")
    hl: str = "en"
    no_cache: bool = False


class SearchBundle(BaseModel):
    """Complete search bundle payload."""

    model_config = ConfigDict(extra="ignore")

    source_summary: SourceSummary = Field(default_factory=SourceSummary)
    core_concepts: list[str] = Field(default_factory=list)
    synonym_groups: list[list[str]] = Field(default_factory=list)
    phrases: list[str] = Field(default_factory=list)
    exclude_terms: list[str] = Field(default_factory=list)
    technical_features: list[str] = Field(default_factory=list)
    spec_limits: list[SpecLimit] = Field(default_factory=list)
    cpc_candidates: list[str] = Field(default_factory=list)
    ipc_candidates: list[str] = Field(default_factory=list)
    domain_tags: list[str] = Field(default_factory=list)
    date_window: DateWindow | None = None
    jurisdictions_preference: list[str] = Field(default_factory=list)
    ambiguous_terms: list[str] = Field(default_factory=list)
    sensitive_tokens: list[str] = Field(default_factory=list)
    query_variants: list[QueryVariant] = Field(default_factory=list)
    serpapi_defaults: SerpApiDefaults = Field(default_factory=SerpApiDefaults)
    fields_for_details: list[str] = Field(default_factory=list)
    detail_priority_rules: str = ""

    def variant(self, label: str) -> QueryVariant | None:
        for variant in self.query_variants:
            if variant.label == label:
                return variant
        return None

    def canonical_json(self) -> str:
        """Stable JSON text (sorted keys) used for hashing and snapshots."""
        return json.dumps(self.model_dump(mode="json", by_alias=True), sort_keys=True, ensure_ascii=False)

    def content_hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()


class BundleValidationResult(BaseModel):
    """Outcome of structural validation."""

    valid: bool
    errors: list[str] = Field(default_factory=list)


# ============================================================================
# Validation
# ============================================================================


def _pydantic_errors(exc: ValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"])
        errors.append(f"{location}: {err['msg']}")
    return errors


def validate_bundle(payload: SearchBundle | dict[str, Any]) -> BundleValidationResult:
    """Run every structural check and report all failures at once.

    Checks:
    - source_summary.title present
    - core_concepts non-empty
    - exactly 3 query variants labelled broad/baseline/narrow, no duplicates
    - each query non-empty and at most 300 characters
    - num within [1, 50], page within [1, 20]
    - serpapi_defaults.engine is google_patents or google_scholar when given
    - sensitive_tokens empty

    Pure function: nothing is persisted.
    """
    if isinstance(payload, SearchBundle):
        bundle = payload
    else:
        try:
            bundle = SearchBundle.model_validate(payload)
        except ValidationError as e:
            return BundleValidationResult(valid=False, errors=_pydantic_errors(e))

    errors: list[str] = []

    if not bundle.source_summary.title.strip():
        errors.append("source_summary.title is required")

    if not [c for c in bundle.core_concepts if c.strip()]:
        errors.append("core_concepts must be a non-empty list")

    variants = bundle.query_variants
    if len(variants) != len(VARIANT_ORDER):
        errors.append(f"query_variants must contain exactly {len(VARIANT_ORDER)} items (got {len(variants)})")

    seen: set[str] = set()
    for i, variant in enumerate(variants):
        if variant.label not in VARIANT_ORDER:
            errors.append(f"query_variants[{i}].label must be one of: {', '.join(VARIANT_ORDER)}")
        elif variant.label in seen:
            errors.append(f"Duplicate label '{variant.label}' in query_variants")
        else:
            seen.add(variant.label)

        if not variant.q.strip():
            errors.append(f"query_variants[{i}].q must be a non-empty string")
        elif len(variant.q) > MAX_QUERY_LENGTH:
            errors.append(
                f"query_variants[{i}].q exceeds maximum length of {MAX_QUERY_LENGTH} characters"
            )

        if not 1 <= variant.num <= 50:
            errors.append(f"query_variants[{i}].num must be between 1 and 50")
        if not 1 <= variant.page <= 20:
            errors.append(f"query_variants[{i}].page must be between 1 and 20")

    engine = bundle.serpapi_defaults.engine
    if engine and engine.strip() and engine not in ALLOWED_ENGINES:
        errors.append('serpapi_defaults.engine must be "google_patents" or "google_scholar"')

    if bundle.sensitive_tokens:
        errors.append("sensitive_tokens must be empty for approval")

    return BundleValidationResult(valid=not errors, errors=errors)


def check_guardrails(bundle: SearchBundle) -> list[str]:
    """Soft query-quality checks. Returns warnings; never blocks approval."""
    warnings: list[str] = []

    for variant in bundle.query_variants:
        quoted = re.findall(r'"[^"]*"', variant.q)
        if len(quoted) > MAX_QUOTED_PHRASES:
            warnings.append(
                f"Query variant {variant.label} has {len(quoted)} quoted phrases "
                f"(max {MAX_QUOTED_PHRASES} recommended)"
            )

    or_groups = sum(len(re.findall(r"\([^)]*\)", v.q)) for v in bundle.query_variants)
    if or_groups < MIN_OR_GROUPS:
        warnings.append("Consider adding more OR-groups for better recall")

    context_terms = [t.lower() for t in bundle.core_concepts + bundle.technical_features if t.strip()]
    for ambiguous in bundle.ambiguous_terms:
        needle = ambiguous.lower()
        has_context = any(
            needle in v.q.lower() and any(ctx in v.q.lower() for ctx in context_terms if ctx != needle)
            for v in bundle.query_variants
        )
        if not has_context:
            warnings.append(f'Ambiguous term "{ambiguous}" may need context terms for disambiguation')

    return warnings


# ============================================================================
# Lifecycle Service
# ============================================================================


class BundleRecord(BaseModel):
    """Persisted bundle with its lifecycle metadata."""

    id: str
    user_id: str
    status: BundleStatus
    bundle: SearchBundle
    bundle_hash: str | None = None
    consumed: bool = False

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "BundleRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            status=BundleStatus(row["status"]),
            bundle=SearchBundle.model_validate_json(row["bundle_json"]),
            bundle_hash=row.get("bundle_hash"),
            consumed=bool(row.get("consumed")),
        )


class BundleService:
    """Create, edit, review, approve and archive bundles.

    Every mutation appends a bundle_history entry.
    """

    def __init__(self, db: Database):
        self._db = db

    async def create(self, user_id: str, payload: SearchBundle | dict[str, Any]) -> BundleRecord:
        """Store a new DRAFT bundle. Structure is checked only at approval."""
        bundle = payload if isinstance(payload, SearchBundle) else SearchBundle.model_validate(payload)
        bundle_id = str(uuid.uuid4())
        bundle_json = bundle.canonical_json()

        await self._db.insert_bundle(bundle_id, user_id, bundle_json, BundleStatus.DRAFT.value)
        await self._db.append_bundle_history(
            bundle_id, "create", actor_id=user_id, to_status=BundleStatus.DRAFT.value, bundle_json=bundle_json
        )
        logger.info("Bundle created", bundle_id=bundle_id, user_id=user_id)
        return BundleRecord(id=bundle_id, user_id=user_id, status=BundleStatus.DRAFT, bundle=bundle)

    async def get(self, bundle_id: str, user_id: str | None = None) -> BundleRecord:
        """Load a bundle. A bundle owned by someone else is reported as missing."""
        row = await self._db.get_bundle(bundle_id)
        if row is None or (user_id is not None and row["user_id"] != user_id):
            raise NotFoundError("bundle", bundle_id)
        return BundleRecord.from_row(row)

    async def edit(self, bundle_id: str, user_id: str, payload: SearchBundle | dict[str, Any]) -> BundleRecord:
        record = await self.get(bundle_id, user_id)
        if record.consumed:
            raise InvalidStateError("Bundle was consumed by a run and is immutable", current_state=record.status.value)
        if record.status not in EDITABLE_STATUSES:
            raise InvalidStateError(f"Bundle cannot be edited in status {record.status.value}", current_state=record.status.value)

        bundle = payload if isinstance(payload, SearchBundle) else SearchBundle.model_validate(payload)
        bundle_json = bundle.canonical_json()
        await self._db.update_bundle(bundle_id, {"bundle_json": bundle_json})
        await self._db.append_bundle_history(
            bundle_id,
            "edit",
            actor_id=user_id,
            from_status=record.status.value,
            to_status=record.status.value,
            bundle_json=bundle_json,
        )
        logger.info("Bundle edited", bundle_id=bundle_id)
        return record.model_copy(update={"bundle": bundle})

    async def submit_for_review(self, bundle_id: str, user_id: str) -> BundleRecord:
        record = await self.get(bundle_id, user_id)
        if record.status != BundleStatus.DRAFT:
            raise InvalidStateError("Only DRAFT bundles can be submitted for review", current_state=record.status.value)
        return await self._transition(record, BundleStatus.READY_FOR_REVIEW, "submit", user_id)

    async def approve(self, bundle_id: str, user_id: str, *, notes: str | None = None) -> BundleRecord:
        """Validate and approve. Any failing check rejects the whole approval.

        Raises:
            BundleValidationError: With every structural error itemized.
            InvalidStateError: If the bundle is not READY_FOR_REVIEW.
        """
        record = await self.get(bundle_id, user_id)
        if record.status != BundleStatus.READY_FOR_REVIEW:
            raise InvalidStateError("Bundle not ready for approval", current_state=record.status.value)

        result = validate_bundle(record.bundle)
        if not result.valid:
            logger.info("Bundle approval rejected", bundle_id=bundle_id, error_count=len(result.errors))
            raise BundleValidationError(result.errors, bundle_id=bundle_id)

        for warning in check_guardrails(record.bundle):
            logger.warning("Bundle guardrail", bundle_id=bundle_id, warning=warning)

        bundle_hash = record.bundle.content_hash()
        await self._db.update_bundle(
            bundle_id,
            {"bundle_hash": bundle_hash, "approved_at": now_iso()},
        )
        approved = await self._transition(record, BundleStatus.APPROVED, "approve", user_id, note=notes)
        return approved.model_copy(update={"bundle_hash": bundle_hash})

    async def archive(self, bundle_id: str, user_id: str) -> BundleRecord:
        record = await self.get(bundle_id, user_id)
        if record.status == BundleStatus.ARCHIVED:
            raise InvalidStateError("Bundle is already archived", current_state=record.status.value)
        return await self._transition(record, BundleStatus.ARCHIVED, "archive", user_id)

    async def history(self, bundle_id: str, user_id: str | None = None) -> list[dict[str, Any]]:
        await self.get(bundle_id, user_id)
        return await self._db.get_bundle_history(bundle_id)

    async def _transition(
        self,
        record: BundleRecord,
        to_status: BundleStatus,
        action: str,
        actor_id: str,
        *,
        note: str | None = None,
    ) -> BundleRecord:
        await self._db.update_bundle(record.id, {"status": to_status.value})
        await self._db.append_bundle_history(
            record.id,
            action,
            actor_id=actor_id,
            from_status=record.status.value,
            to_status=to_status.value,
            note=note,
        )
        logger.info(
            "Bundle status changed",
            bundle_id=record.id,
            from_status=record.status.value,
            to_status=to_status.value,
        )
        return record.model_copy(update={"status": to_status})
