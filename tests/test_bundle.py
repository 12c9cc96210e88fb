"""
Tests for src/search/bundle.py

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-V-N-01 | Valid 3-variant bundle | Equivalence – normal | valid, no errors | - |
| TC-V-A-01 | Missing title | Equivalence – abnormal | title error | - |
| TC-V-A-02 | Empty core_concepts | Equivalence – abnormal | concepts error | - |
| TC-V-A-03 | Two variants | Boundary – count | count error | - |
| TC-V-A-04 | Duplicate label | Equivalence – abnormal | duplicate error | - |
| TC-V-A-05 | Unknown label | Equivalence – abnormal | label error | - |
| TC-V-B-01 | q of 300 chars | Boundary – max | valid | - |
| TC-V-B-02 | q of 301 chars | Boundary – max+1 | length error | - |
| TC-V-B-03 | num=0 / num=51 | Boundary – range | num error | - |
| TC-V-B-04 | page=21 | Boundary – range | page error | - |
| TC-V-A-06 | Engine "bing" | Equivalence – abnormal | engine error | - |
| TC-V-A-07 | sensitive_tokens set | Equivalence – abnormal | sensitive error | - |
| TC-V-A-08 | Several faults at once | Equivalence – abnormal | all itemized | all-or-nothing |
| TC-V-A-09 | num given as text | Equivalence – abnormal | parse error listed | - |
| TC-G-N-01 | 3 quoted phrases | Equivalence – normal | warning | soft |
| TC-G-N-02 | No OR groups | Equivalence – normal | warning | soft |
| TC-G-N-03 | Ambiguous term without context | Equivalence – normal | warning | soft |
| TC-S-N-01 | create | Equivalence – normal | DRAFT + history | - |
| TC-S-N-02 | submit + approve | Equivalence – normal | APPROVED, hash stored | - |
| TC-S-A-01 | approve invalid bundle | Equivalence – abnormal | BundleValidationError, still READY | - |
| TC-S-A-02 | approve DRAFT | Equivalence – abnormal | InvalidStateError | - |
| TC-S-A-03 | other user's bundle | Equivalence – abnormal | NotFoundError | - |
| TC-S-A-04 | edit APPROVED | Equivalence – abnormal | InvalidStateError | - |
| TC-S-N-03 | archive | Equivalence – normal | ARCHIVED | - |
| TC-S-N-04 | hash stability | Equivalence – normal | key order irrelevant | - |
"""

import pytest

from src.search.bundle import (
    BundleService,
    BundleStatus,
    SearchBundle,
    check_guardrails,
    validate_bundle,
)
from src.utils.errors import BundleValidationError, ErrorCode, InvalidStateError, NotFoundError

pytestmark = pytest.mark.unit


class TestValidateBundle:
    """Structural validation."""

    def test_valid_bundle(self, bundle_payload):
        """TC-V-N-01: Complete bundle passes."""
        # Given: A valid payload
        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: Valid, no errors
        assert result.valid is True
        assert result.errors == []

    def test_missing_title(self, bundle_payload):
        """TC-V-A-01: Title is required."""
        # Given: Blank title
        bundle_payload["source_summary"]["title"] = "   "

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: Title error reported
        assert result.valid is False
        assert "source_summary.title is required" in result.errors

    def test_empty_core_concepts(self, make_bundle_payload):
        """TC-V-A-02: core_concepts must not be empty."""
        # Given: No concepts
        payload = make_bundle_payload(core_concepts=[])

        # When: Validating
        result = validate_bundle(payload)

        # Then: Concepts error reported
        assert "core_concepts must be a non-empty list" in result.errors

    def test_two_variants(self, bundle_payload):
        """TC-V-A-03: Exactly three variants are required."""
        # Given: The narrow variant removed
        bundle_payload["query_variants"] = bundle_payload["query_variants"][:2]

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: Count error mentions the actual number
        assert result.valid is False
        assert any("exactly 3 items (got 2)" in e for e in result.errors)

    def test_duplicate_label(self, bundle_payload):
        """TC-V-A-04: Labels must be distinct."""
        # Given: Two broad variants
        bundle_payload["query_variants"][1]["label"] = "broad"

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: Duplicate error reported
        assert "Duplicate label 'broad' in query_variants" in result.errors

    def test_unknown_label(self, bundle_payload):
        """TC-V-A-05: Only broad/baseline/narrow are accepted."""
        # Given: A "wide" label
        bundle_payload["query_variants"][0]["label"] = "wide"

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: Label error carries the index
        assert any(e.startswith("query_variants[0].label") for e in result.errors)

    def test_query_at_max_length(self, bundle_payload):
        """TC-V-B-01: 300 characters is allowed."""
        # Given: q of exactly 300 characters
        bundle_payload["query_variants"][0]["q"] = "a" * 300

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: Valid
        assert result.valid is True

    def test_query_over_max_length(self, bundle_payload):
        """TC-V-B-02: 301 characters is rejected."""
        # Given: q of 301 characters
        bundle_payload["query_variants"][2]["q"] = "a" * 301

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: Length error for index 2
        assert "query_variants[2].q exceeds maximum length of 300 characters" in result.errors

    @pytest.mark.parametrize("num", [0, 51])
    def test_num_out_of_range(self, bundle_payload, num):
        """TC-V-B-03: num must be within [1, 50]."""
        # Given: num outside range
        bundle_payload["query_variants"][1]["num"] = num

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: num error reported
        assert "query_variants[1].num must be between 1 and 50" in result.errors

    @pytest.mark.parametrize("num", [1, 50])
    def test_num_range_edges(self, bundle_payload, num):
        """TC-V-B-03: Range edges are accepted."""
        bundle_payload["query_variants"][1]["num"] = num
        assert validate_bundle(bundle_payload).valid is True

    def test_page_out_of_range(self, bundle_payload):
        """TC-V-B-04: page must be within [1, 20]."""
        # Given: page 21
        bundle_payload["query_variants"][0]["page"] = 21

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: page error reported
        assert "query_variants[0].page must be between 1 and 20" in result.errors

    def test_unsupported_engine(self, bundle_payload):
        """TC-V-A-06: Engine must be google_patents or google_scholar."""
        # Given: Another engine
        bundle_payload["serpapi_defaults"]["engine"] = "bing"

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: Engine error reported
        assert any("serpapi_defaults.engine" in e for e in result.errors)

    def test_sensitive_tokens_block_approval(self, make_bundle_payload):
        """TC-V-A-07: sensitive_tokens must be empty."""
        # Given: A redaction leftover
        payload = make_bundle_payload(sensitive_tokens=["ACME-internal"])

        # When: Validating
        result = validate_bundle(payload)

        # Then: Sensitive error reported
        assert "sensitive_tokens must be empty for approval" in result.errors

    def test_all_errors_itemized(self, bundle_payload):
        """TC-V-A-08: Every failing check is reported at once."""
        # Given: Three independent faults
        bundle_payload["source_summary"]["title"] = ""
        bundle_payload["query_variants"][0]["q"] = ""
        bundle_payload["query_variants"][2]["num"] = 99

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: All three are listed
        assert len(result.errors) == 3
        assert "query_variants[0].q must be a non-empty string" in result.errors

    def test_unparseable_field(self, bundle_payload):
        """TC-V-A-09: Type errors come back as itemized errors, not exceptions."""
        # Given: num that is not a number
        bundle_payload["query_variants"][0]["num"] = "twenty"

        # When: Validating
        result = validate_bundle(bundle_payload)

        # Then: One error located at the field
        assert result.valid is False
        assert any(e.startswith("query_variants.0.num") for e in result.errors)


class TestGuardrails:
    """Soft query-quality warnings."""

    def test_too_many_quoted_phrases(self, bundle_payload):
        """TC-G-N-01: More than two quoted phrases warns."""
        # Given: Three quoted phrases in one variant
        bundle_payload["query_variants"][2]["q"] = '"a b" "c d" "e f" (x OR y)'
        bundle = SearchBundle.model_validate(bundle_payload)

        # When: Checking guardrails
        warnings = check_guardrails(bundle)

        # Then: Warning names the variant
        assert any("narrow has 3 quoted phrases" in w for w in warnings)

    def test_missing_or_groups(self, bundle_payload):
        """TC-G-N-02: Fewer than two OR-groups warns."""
        # Given: No parenthesized groups
        for variant in bundle_payload["query_variants"]:
            variant["q"] = "lunch box heater"
        bundle = SearchBundle.model_validate(bundle_payload)

        # When/Then: Recall warning
        assert "Consider adding more OR-groups for better recall" in check_guardrails(bundle)

    def test_ambiguous_term_without_context(self, make_bundle_payload):
        """TC-G-N-03: Ambiguous term never paired with a concept warns."""
        # Given: "cell" only appears alone
        payload = make_bundle_payload(ambiguous_terms=["cell"])
        payload["query_variants"][0]["q"] = "cell (a OR b)"
        bundle = SearchBundle.model_validate(payload)

        # When: Checking guardrails
        warnings = check_guardrails(bundle)

        # Then: Disambiguation warning
        assert any('"cell"' in w for w in warnings)

    def test_clean_bundle_has_no_warnings(self, bundle_payload):
        """Valid fixture bundle passes guardrails."""
        assert check_guardrails(SearchBundle.model_validate(bundle_payload)) == []


class TestBundleService:
    """Lifecycle persisted through the database."""

    @pytest.mark.asyncio
    async def test_create_is_draft(self, memory_database, bundle_payload):
        """TC-S-N-01: New bundles start as DRAFT with a history entry."""
        # Given: A service
        service = BundleService(memory_database)

        # When: Creating
        record = await service.create("user-1", bundle_payload)

        # Then: DRAFT and one history row
        assert record.status == BundleStatus.DRAFT
        history = await service.history(record.id, "user-1")
        assert [h["action"] for h in history] == ["create"]

    @pytest.mark.asyncio
    async def test_submit_and_approve(self, memory_database, bundle_payload):
        """TC-S-N-02: Approval stores the content hash."""
        # Given: A submitted bundle
        service = BundleService(memory_database)
        record = await service.create("user-1", bundle_payload)
        await service.submit_for_review(record.id, "user-1")

        # When: Approving
        approved = await service.approve(record.id, "user-1", notes="looks good")

        # Then: APPROVED with the bundle's hash
        assert approved.status == BundleStatus.APPROVED
        stored = await service.get(record.id)
        assert stored.status == BundleStatus.APPROVED
        assert stored.bundle_hash == SearchBundle.model_validate(bundle_payload).content_hash()
        history = await service.history(record.id)
        assert [h["action"] for h in history] == ["create", "submit", "approve"]
        assert history[-1]["note"] == "looks good"

    @pytest.mark.asyncio
    async def test_approve_invalid_bundle(self, memory_database, make_bundle_payload):
        """TC-S-A-01: Invalid bundle is not approved."""
        # Given: A submitted bundle with no concepts
        service = BundleService(memory_database)
        record = await service.create("user-1", make_bundle_payload(core_concepts=[]))
        await service.submit_for_review(record.id, "user-1")

        # When: Approving
        with pytest.raises(BundleValidationError) as exc_info:
            await service.approve(record.id, "user-1")

        # Then: 400 with itemized errors, status unchanged
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR
        assert exc_info.value.status_code == 400
        assert "core_concepts must be a non-empty list" in exc_info.value.errors
        assert (await service.get(record.id)).status == BundleStatus.READY_FOR_REVIEW

    @pytest.mark.asyncio
    async def test_approve_draft(self, memory_database, bundle_payload):
        """TC-S-A-02: A DRAFT cannot skip review."""
        service = BundleService(memory_database)
        record = await service.create("user-1", bundle_payload)

        with pytest.raises(InvalidStateError):
            await service.approve(record.id, "user-1")

    @pytest.mark.asyncio
    async def test_other_users_bundle(self, memory_database, bundle_payload):
        """TC-S-A-03: Foreign bundles are reported as missing."""
        service = BundleService(memory_database)
        record = await service.create("user-1", bundle_payload)

        with pytest.raises(NotFoundError):
            await service.get(record.id, "user-2")

    @pytest.mark.asyncio
    async def test_edit_approved(self, approved_bundle, memory_database, bundle_payload):
        """TC-S-A-04: Approved bundles are immutable."""
        # Given: An approved bundle
        record = await approved_bundle()

        # When/Then: Editing is refused
        with pytest.raises(InvalidStateError):
            await BundleService(memory_database).edit(record.id, "user-1", bundle_payload)

    @pytest.mark.asyncio
    async def test_edit_draft(self, memory_database, bundle_payload):
        """Drafts can be edited and the change is recorded."""
        service = BundleService(memory_database)
        record = await service.create("user-1", bundle_payload)
        bundle_payload["core_concepts"] = ["bento"]

        edited = await service.edit(record.id, "user-1", bundle_payload)

        assert edited.bundle.core_concepts == ["bento"]
        assert (await service.get(record.id)).bundle.core_concepts == ["bento"]

    @pytest.mark.asyncio
    async def test_archive(self, approved_bundle, memory_database):
        """TC-S-N-03: Any non-archived bundle can be archived once."""
        record = await approved_bundle()
        service = BundleService(memory_database)

        archived = await service.archive(record.id, "user-1")

        assert archived.status == BundleStatus.ARCHIVED
        with pytest.raises(InvalidStateError):
            await service.archive(record.id, "user-1")

    def test_hash_ignores_key_order(self, bundle_payload):
        """TC-S-N-04: Hash is computed over canonical JSON."""
        # Given: Same content, different key order
        reordered = dict(reversed(list(bundle_payload.items())))

        # When/Then: Hashes match
        assert (
            SearchBundle.model_validate(bundle_payload).content_hash()
            == SearchBundle.model_validate(reordered).content_hash()
        )
