"""
Tests for src/filter/novelty.py

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-NV-N-01 | Any HIGH candidate | Equivalence – normal | NOT_NOVEL, default confidence 90 | - |
| TC-NV-N-02 | All LOW, confidence 0.7 | Equivalence – normal | NOVEL, 70, MEDIUM | fraction |
| TC-NV-N-03 | MEDIUM candidates, stage 2 answers | Equivalence – normal | DOUBT_RESOLVED, 95, folded determination | - |
| TC-NV-N-04 | Stage 2 all fail | Equivalence – abnormal | Stays DOUBT, no report URL | - |
| TC-NV-A-01 | Stage 1 LLM error | Equivalence – abnormal | FAILED with message, call logged | - |
| TC-NV-A-02 | Stage 1 not JSON | Equivalence – abnormal | FAILED | - |
| TC-NV-A-03 | Stage 1 without any determination | Boundary – empty | FAILED | - |
| TC-NV-A-04 | Run RUNNING | Equivalence – abnormal | InvalidStateError | - |
| TC-NV-A-05 | No titled/abstracted results | Boundary – empty | InvalidParamsError | - |
| TC-NV-A-06 | Foreign run | Equivalence – abnormal | NotFoundError | - |
| TC-NV-A-07 | run() on a finished assessment | Equivalence – abnormal | InvalidStateError | - |
| TC-NV-A-08 | Gateway raises an unexpected exception | Equivalence – abnormal | FAILED, error id, completed_at set | - |
| TC-NV-B-01 | Stage 1 confidence "Infinity" | Boundary – non-finite | NOVEL, default 85 | - |
| TC-NV-B-02 | No report gate configured | Boundary – optional dependency | Report generation is a no-op | - |
| TC-CS-N-01 | I2/I3 present | Equivalence – normal | Only intersecting items | - |
| TC-CS-N-02 | Only I1 | Equivalence – normal | Top fallback_cap items | - |
| TC-CS-B-01 | NONE rows, missing abstract | Boundary – ineligible | Excluded | - |
| TC-RL-B-01 | Confidence 80 / 79 / 50 / 49 | Boundary – thresholds | HIGH / MEDIUM / MEDIUM / LOW | - |
| TC-AG-N-01 | Stage-2 mixes | Equivalence – normal | NOT_NOVEL wins, all NOVEL, else PARTIALLY | - |
"""

import json

import pytest

from src.filter.llm_schemas import (
    CandidateAssessment,
    ConfidenceLevel,
    Determination,
    InventionSummary,
    Relevance,
    Stage1Output,
    Stage2Output,
)
from src.filter.novelty import (
    NoveltyAssessmentOrchestrator,
    NoveltyLLMGateway,
    aggregate_detailed,
    confidence_level_for,
    screening_determination,
)
from src.report.gate import ReportGate
from src.report.pdf import ReportRenderer
from src.research.state import RunStateMachine, RunStatus
from src.search.aggregator import IntersectionType, UnifiedResult, rrf_score
from src.search.normalizer import ContentType
from src.utils.errors import InvalidParamsError, InvalidStateError, NotFoundError
from src.utils.prompt_manager import PromptManager
from src.utils.provider_registry import ProviderRegistry
from tests.conftest import PROJECT_ROOT, FakeLLMProvider, create_running_run

pytestmark = pytest.mark.unit

BASE_URL = "/api/prior-art"


def row(identifier: str, ranks: dict[str, int], abstract: str = "A heated food container.", title: str = "") -> dict:
    return UnifiedResult(
        identifier=identifier,
        content_type=ContentType.PATENT,
        title=title or f"Title {identifier}",
        abstract=abstract,
        ranks=ranks,
        intersection_type=IntersectionType.from_count(len(ranks)),
        score=rrf_score(ranks),
        shortlisted=len(ranks) >= 2,
    ).to_row()


DEFAULT_ROWS = [
    row("US1A", {"broad": 1, "baseline": 1, "narrow": 1}),
    row("US3C", {"broad": 3, "narrow": 2}),
    row("US2B", {"broad": 2}),
]


async def completed_run(db, rows: list[dict] | None = None, status: RunStatus = RunStatus.COMPLETED) -> str:
    _, run_id = await create_running_run(db)
    await db.insert_unified_results(run_id, DEFAULT_ROWS if rows is None else rows)
    if status != RunStatus.RUNNING:
        await RunStateMachine(db).finish(run_id, status)
    return run_id


def build_orchestrator(db, llm: FakeLLMProvider, reports_dir=None, **kwargs) -> NoveltyAssessmentOrchestrator:
    registry = ProviderRegistry("llm")
    registry.register(llm)
    gateway = NoveltyLLMGateway(registry, PromptManager(PROJECT_ROOT / "config" / "prompts"))
    gate = None
    if reports_dir is not None:
        gate = ReportGate(db, ReportRenderer(db, reports_dir), public_base_url=BASE_URL)
    return NoveltyAssessmentOrchestrator(db, gateway, report_gate=gate, **kwargs)


def screening(*assessments: tuple[str, str], **extra) -> str:
    return json.dumps(
        {
            "patent_assessments": [
                {"publication_number": number, "relevance": relevance, "reasoning": f"{number} is {relevance}"}
                for number, relevance in assessments
            ],
            **extra,
        }
    )


def detailed(determination: str, level: str = "MEDIUM", **extra) -> str:
    return json.dumps(
        {
            "determination": determination,
            "confidence_level": level,
            "technical_reasoning": f"reasoning for {determination}",
            **extra,
        }
    )


class TestScreeningOutcomes:
    """Stage 1 determinations."""

    @pytest.mark.asyncio
    async def test_not_novel(self, memory_database, temp_dir):
        """TC-NV-N-01: A HIGH candidate means NOT_NOVEL."""
        # Given: Screening marks US1A HIGH and omits confidence
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider(
            [screening(("US1A", "HIGH"), ("US3C", "LOW"), novel_aspects=["battery", "Battery"])]
        )
        orchestrator = build_orchestrator(memory_database, llm, temp_dir)

        # When: Assessing
        result = await orchestrator.assess(run_id, "user-1")

        # Then: NOT_NOVEL with the default confidence and a report
        assert result["status"] == "NOT_NOVEL"
        assert result["finalDetermination"] == "NOT_NOVEL"
        assert result["confidence"] == 90
        assert result["confidenceLevel"] == "HIGH"
        assert result["novelAspects"] == ["battery"]
        assert result["reportUrl"] == f"{BASE_URL}/runs/{run_id}/novelty-assessment/{result['id']}/report"
        assert (temp_dir / f"{result['id']}.pdf").exists()

        calls = await memory_database.get_llm_calls(result["id"])
        assert [c["stage"] for c in calls] == ["stage1"]
        assert calls[0]["status"] == "success"
        assert calls[0]["prompt_tokens"] == 100
        assert "Self-heating lunch box" in calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_novel_with_fraction_confidence(self, memory_database):
        """TC-NV-N-02: All LOW is NOVEL; fractional confidence is scaled."""
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider([screening(("US1A", "low"), ("US3C", "LOW"), confidence=0.7)])

        result = await build_orchestrator(memory_database, llm).assess(run_id, "user-1")

        assert result["status"] == "NOVEL"
        assert result["confidence"] == 70
        assert result["confidenceLevel"] == "MEDIUM"
        assert "reportUrl" not in result

    @pytest.mark.asyncio
    async def test_overall_only(self, memory_database):
        """No per-candidate list: the model's overall verdict is used."""
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider([json.dumps({"overall_determination": "novel"})])

        result = await build_orchestrator(memory_database, llm).assess(run_id, "user-1")

        assert result["status"] == "NOVEL"
        assert result["confidence"] == 85


class TestDoubtResolution:
    """Stage 2."""

    @pytest.mark.asyncio
    async def test_resolved(self, memory_database, temp_dir):
        """TC-NV-N-03: MEDIUM candidates are compared one by one."""
        # Given: Two MEDIUM candidates, claims stored for US1A
        run_id = await completed_run(memory_database)
        await memory_database.save_patent_detail(
            "US1A",
            requested_id="patent/US1A/en",
            raw_payload={"claims": ["A lunch box with a heater."]},
            projection={"claims": ["A lunch box with a heater."], "claims_count": 1},
        )
        llm = FakeLLMProvider(
            [
                screening(("US1A", "MEDIUM"), ("patent/US3C/en", "MEDIUM"), ("US2B", "LOW"), confidence=55),
                detailed("NOT_NOVEL", "HIGH", non_novel_aspects=["heater"], suggestions=["add a sensor", "use PCM"]),
                detailed("novel", "low", novel_aspects=["removable battery"]),
            ]
        )
        orchestrator = build_orchestrator(memory_database, llm, temp_dir)

        # When: Assessing
        result = await orchestrator.assess(run_id, "user-1")

        # Then: Resolved with the folded determination
        assert result["status"] == "DOUBT_RESOLVED"
        assert result["finalDetermination"] == "NOT_NOVEL"
        assert result["confidence"] == 95
        assert result["confidenceLevel"] == "HIGH"
        assert "heater" in result["nonNovelAspects"]
        assert "removable battery" in result["novelAspects"]
        assert result["remarks"].startswith("US1A: reasoning for NOT_NOVEL")
        assert "reportUrl" in result

        calls = await memory_database.get_llm_calls(result["id"])
        assert [(c["stage"], c["candidate_id"]) for c in calls] == [
            ("stage1", None),
            ("stage2", "US1A"),
            ("stage2", "US3C"),
        ]
        assert "1. A lunch box with a heater." in calls[1]["prompt"]
        assert "Claims: not available" in calls[2]["prompt"]

        row_data = await memory_database.get_assessment(result["id"])
        stage2 = json.loads(row_data["stage2_json"])
        assert [r["status"] for r in stage2] == ["success", "success"]
        assert stage2[0]["output"]["suggestions"] == "add a sensor; use PCM"

    @pytest.mark.asyncio
    async def test_partially_novel(self, memory_database):
        """Mixed NOVEL and PARTIALLY_NOVEL folds to PARTIALLY_NOVEL."""
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider(
            [
                screening(("US1A", "MEDIUM"), ("US3C", "MEDIUM")),
                detailed("NOVEL", "MEDIUM"),
                detailed("PARTIALLY_NOVEL", "LOW"),
            ]
        )

        result = await build_orchestrator(memory_database, llm).assess(run_id, "user-1")

        assert result["status"] == "DOUBT_RESOLVED"
        assert result["finalDetermination"] == "PARTIALLY_NOVEL"
        assert result["confidenceLevel"] == "MEDIUM"

    @pytest.mark.asyncio
    async def test_unresolved(self, memory_database, temp_dir):
        """TC-NV-N-04: No usable stage-2 answer leaves DOUBT."""
        # Given: Stage 2 calls all fail
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider([screening(("US1A", "MEDIUM")), RuntimeError("backend down")])
        orchestrator = build_orchestrator(memory_database, llm, temp_dir)

        # When: Assessing
        result = await orchestrator.assess(run_id, "user-1")

        # Then: DOUBT with stage-1 confidence, no report
        assert result["status"] == "DOUBT"
        assert result["finalDetermination"] == "DOUBT"
        assert result["confidence"] == 60
        assert "reportUrl" not in result
        assert not (temp_dir / f"{result['id']}.pdf").exists()
        stored = await memory_database.get_assessment(result["id"])
        assert json.loads(stored["stage2_json"])[0]["status"] == "failed"
        calls = await memory_database.get_llm_calls(result["id"])
        assert calls[-1]["status"] == "error"

    @pytest.mark.asyncio
    async def test_unknown_reference_ignored(self, memory_database):
        """MEDIUM verdicts for unlisted numbers are not sent to stage 2."""
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider([screening(("EP9999999A1", "MEDIUM"))])

        result = await build_orchestrator(memory_database, llm).assess(run_id, "user-1")

        assert result["status"] == "DOUBT"
        assert len(llm.prompts) == 1


class TestFailures:
    """Failure and precondition paths."""

    @pytest.mark.asyncio
    async def test_stage1_llm_error(self, memory_database):
        """TC-NV-A-01: Screening call failure ends in FAILED."""
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider([RuntimeError("connection refused")])

        result = await build_orchestrator(memory_database, llm).assess(run_id, "user-1")

        assert result["status"] == "FAILED"
        assert "connection refused" in result["errorMessage"]
        calls = await memory_database.get_llm_calls(result["id"])
        assert calls[0]["status"] == "error"

    @pytest.mark.asyncio
    async def test_stage1_not_json(self, memory_database):
        """TC-NV-A-02: Prose instead of JSON ends in FAILED."""
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider(["I think this invention is probably novel."])

        result = await build_orchestrator(memory_database, llm).assess(run_id, "user-1")

        assert result["status"] == "FAILED"
        assert result["errorMessage"]

    @pytest.mark.asyncio
    async def test_stage1_no_determination(self, memory_database):
        """TC-NV-A-03: An empty object carries no verdict."""
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider(["{}"])

        result = await build_orchestrator(memory_database, llm).assess(run_id, "user-1")

        assert result["status"] == "FAILED"
        assert result["errorMessage"] == "Screening response carried no determination"

    @pytest.mark.asyncio
    async def test_stage1_infinite_confidence(self, memory_database):
        """TC-NV-B-01: A non-finite confidence falls back to the default."""
        # Given: Screening answers all LOW with confidence "Infinity"
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider([screening(("US1A", "LOW"), ("US3C", "LOW"), confidence="Infinity")])

        # When: Assessing
        result = await build_orchestrator(memory_database, llm).assess(run_id, "user-1")

        # Then: NOVEL with the default confidence, assessment finished
        assert result["status"] == "NOVEL"
        assert result["confidence"] == 85
        assert result["completedAt"] is not None

    @pytest.mark.asyncio
    async def test_internal_error_marks_failed(self, memory_database, monkeypatch):
        """TC-NV-A-08: Unexpected exceptions end in FAILED with an error id."""
        # Given: A gateway raising something other than LLMError
        run_id = await completed_run(memory_database)
        orchestrator = build_orchestrator(memory_database, FakeLLMProvider(["{}"]))

        async def broken(*args, **kwargs):
            raise OverflowError("cannot convert float infinity to integer")

        monkeypatch.setattr(orchestrator._gateway, "assess", broken)
        assessment_id = await orchestrator.start(run_id, "user-1")

        # When: Running the assessment
        result = await orchestrator.run(assessment_id)

        # Then: FAILED, finished, no internals leaked
        assert result["status"] == "FAILED"
        assert result["completedAt"] is not None
        assert result["errorMessage"].startswith("Internal error (err_")
        assert "infinity" not in result["errorMessage"]
        row = await memory_database.get_assessment(assessment_id)
        assert row["status"] == "FAILED"

    @pytest.mark.asyncio
    async def test_run_not_completed(self, memory_database):
        """TC-NV-A-04: RUNNING runs cannot be assessed."""
        run_id = await completed_run(memory_database, status=RunStatus.RUNNING)

        with pytest.raises(InvalidStateError):
            await build_orchestrator(memory_database, FakeLLMProvider(["{}"])).start(run_id, "user-1")

    @pytest.mark.asyncio
    async def test_run_with_warnings_assessable(self, memory_database):
        """COMPLETED_WITH_WARNINGS runs can be assessed."""
        run_id = await completed_run(memory_database, status=RunStatus.COMPLETED_WITH_WARNINGS)

        assessment_id = await build_orchestrator(memory_database, FakeLLMProvider(["{}"])).start(run_id, "user-1")

        assert (await memory_database.get_assessment(assessment_id))["status"] == "IN_PROGRESS"

    @pytest.mark.asyncio
    async def test_no_candidates(self, memory_database):
        """TC-NV-A-05: Nothing with title and abstract."""
        run_id = await completed_run(memory_database, rows=[row("US1A", {"broad": 1}, abstract="")])

        with pytest.raises(InvalidParamsError):
            await build_orchestrator(memory_database, FakeLLMProvider(["{}"])).start(run_id, "user-1")

    @pytest.mark.asyncio
    async def test_foreign_run(self, memory_database):
        """TC-NV-A-06: Other users' runs are invisible."""
        run_id = await completed_run(memory_database)

        with pytest.raises(NotFoundError):
            await build_orchestrator(memory_database, FakeLLMProvider(["{}"])).start(run_id, "user-2")

    @pytest.mark.asyncio
    async def test_rerun_finished(self, memory_database):
        """TC-NV-A-07: A finished assessment is not driven again."""
        run_id = await completed_run(memory_database)
        orchestrator = build_orchestrator(memory_database, FakeLLMProvider([screening(("US1A", "LOW"))]))
        result = await orchestrator.assess(run_id, "user-1")

        with pytest.raises(InvalidStateError):
            await orchestrator.run(result["id"])

    @pytest.mark.asyncio
    async def test_custom_invention(self, memory_database):
        """An explicit invention summary replaces the bundle's."""
        run_id = await completed_run(memory_database)
        llm = FakeLLMProvider([screening(("US1A", "LOW"))])

        await build_orchestrator(memory_database, llm).assess(
            run_id, "user-1", InventionSummary(title="Foldable solar kettle")
        )

        assert "Foldable solar kettle" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_report_generation_without_gate(self, memory_database):
        """TC-NV-B-02: Report generation is a no-op when no gate is configured."""
        run_id = await completed_run(memory_database)
        orchestrator = build_orchestrator(memory_database, FakeLLMProvider([screening(("US1A", "HIGH"))]))
        result = await orchestrator.assess(run_id, "user-1")

        await orchestrator._generate_report(result["id"])

        row = await memory_database.get_assessment(result["id"])
        assert row["status"] == "NOT_NOVEL"
        assert "reportUrl" not in result


class TestCandidateSelection:
    """select_candidates()."""

    @pytest.mark.asyncio
    async def test_intersecting_only(self, memory_database):
        """TC-CS-N-01: I2/I3 present, I1 excluded."""
        run_id = await completed_run(memory_database)
        orchestrator = build_orchestrator(memory_database, FakeLLMProvider(["{}"]))

        candidates = await orchestrator.select_candidates(run_id)

        assert [c.identifier for c in candidates] == ["US1A", "US3C"]
        assert candidates[0].found_in_variants == ["broad", "baseline", "narrow"]

    @pytest.mark.asyncio
    async def test_fallback(self, memory_database):
        """TC-CS-N-02: Only I1 items: top fallback_cap."""
        rows = [row(f"US{i}X", {"broad": i}) for i in range(1, 6)]
        run_id = await completed_run(memory_database, rows=rows)
        orchestrator = build_orchestrator(memory_database, FakeLLMProvider(["{}"]), fallback_cap=3)

        candidates = await orchestrator.select_candidates(run_id)

        assert [c.identifier for c in candidates] == ["US1X", "US2X", "US3X"]

    @pytest.mark.asyncio
    async def test_ineligible(self, memory_database):
        """TC-CS-B-01: NONE rows and rows without abstract are skipped."""
        rows = [
            row("US1A", {"broad": 1, "narrow": 1}, abstract=""),
            row("US2B", {"broad": 2}),
            UnifiedResult(
                identifier="JP1Z", content_type=ContentType.PATENT, title="Local", abstract="Local match"
            ).to_row(),
        ]
        run_id = await completed_run(memory_database, rows=rows)
        orchestrator = build_orchestrator(memory_database, FakeLLMProvider(["{}"]))

        candidates = await orchestrator.select_candidates(run_id)

        assert [c.identifier for c in candidates] == ["US2B"]


class TestDecisionRules:
    """Pure helpers."""

    def test_screening_rules(self):
        """HIGH beats MEDIUM beats LOW."""

        def output(*relevances: Relevance) -> Stage1Output:
            return Stage1Output(
                patent_assessments=[
                    CandidateAssessment(publication_number=f"P{i}", relevance=r) for i, r in enumerate(relevances)
                ]
            )

        assert screening_determination(output(Relevance.LOW, Relevance.HIGH, Relevance.MEDIUM)) == Determination.NOT_NOVEL
        assert screening_determination(output(Relevance.LOW, Relevance.MEDIUM)) == Determination.DOUBT
        assert screening_determination(output(Relevance.LOW)) == Determination.NOVEL
        assert screening_determination(Stage1Output()) is None

    @pytest.mark.parametrize(
        ("confidence", "level"),
        [(80, ConfidenceLevel.HIGH), (79, ConfidenceLevel.MEDIUM), (50, ConfidenceLevel.MEDIUM), (49, ConfidenceLevel.LOW)],
    )
    def test_confidence_levels(self, confidence, level):
        """TC-RL-B-01: Level thresholds."""
        assert confidence_level_for(confidence) == level

    def test_aggregate_detailed(self):
        """TC-AG-N-01: Folding stage-2 answers."""
        novel = Stage2Output(determination="NOVEL", confidence_level="LOW")
        partial = Stage2Output(determination="PARTIALLY_NOVEL", confidence_level="MEDIUM")
        anticipated = Stage2Output(determination="NOT_NOVEL", confidence_level="LOW")

        assert aggregate_detailed([novel, anticipated]) == (Determination.NOT_NOVEL, ConfidenceLevel.LOW)
        assert aggregate_detailed([novel, novel]) == (Determination.NOVEL, ConfidenceLevel.LOW)
        assert aggregate_detailed([novel, partial]) == (Determination.PARTIALLY_NOVEL, ConfidenceLevel.MEDIUM)
