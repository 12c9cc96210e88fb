"""
Two-stage LLM novelty assessment.

Stage 1 (screening) sends the invention summary and the run's candidate set
in a single call. Per-candidate relevance decides the outcome:

    any HIGH    -> NOT_NOVEL
    any MEDIUM  -> DOUBT
    otherwise   -> NOVEL

Stage 2 (detailed comparison) only runs on DOUBT. Each MEDIUM candidate is
compared one call at a time, with its claims when they were fetched. The
per-candidate determinations are folded into a final one and the assessment
becomes DOUBT_RESOLVED; if no stage-2 call produced a usable answer it stays
DOUBT.

Only runs in COMPLETED or COMPLETED_WITH_WARNINGS can be assessed.
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from src.filter.llm import call_llm
from src.filter.llm_output import parse_llm_json
from src.filter.llm_schemas import (
    REPORTABLE_STATUSES,
    AssessmentStatus,
    ConfidenceLevel,
    Determination,
    InventionSummary,
    NoveltyCandidate,
    Relevance,
    Stage1Output,
    Stage2Output,
    Stage2Result,
    dedupe,
)
from src.filter.provider import ChatMessage, LLMOptions
from src.research.state import ASSESSABLE_STATUSES
from src.search.aggregator import MULTI_VARIANT, IntersectionType
from src.search.bundle import SearchBundle
from src.search.normalizer import ContentType, canonicalize_patent_id
from src.storage.database import Database, now_iso
from src.utils.errors import (
    InvalidParamsError,
    InvalidStateError,
    LLMError,
    NotFoundError,
    PriorArtError,
    generate_error_id,
)
from src.utils.logging import LogContext, get_logger
from src.utils.prompt_manager import PromptManager, PromptTemplateError
from src.utils.provider_registry import ProviderRegistry

if TYPE_CHECKING:
    from src.report.gate import ReportGate

logger = get_logger(__name__)

STAGE1 = "stage1"
STAGE2 = "stage2"

SCREENING_TEMPLATE = "novelty_screening"
DETAILED_TEMPLATE = "novelty_detailed"

# Used when the screening response omits a confidence value
DEFAULT_CONFIDENCE = {
    Determination.NOT_NOVEL: 90,
    Determination.DOUBT: 60,
    Determination.NOVEL: 85,
}
RESOLVED_CONFIDENCE = 95


# ============================================================================
# Decision rules
# ============================================================================


def screening_determination(output: Stage1Output) -> Determination | None:
    """Derive the stage-1 determination from per-candidate relevance.

    The model's own overall_determination is only used when it returned no
    per-candidate assessments at all.
    """
    relevances = {a.relevance for a in output.patent_assessments}
    if Relevance.HIGH in relevances:
        return Determination.NOT_NOVEL
    if Relevance.MEDIUM in relevances:
        return Determination.DOUBT
    if output.patent_assessments:
        return Determination.NOVEL
    return output.overall_determination


def confidence_level_for(confidence: int) -> ConfidenceLevel:
    if confidence >= 80:
        return ConfidenceLevel.HIGH
    if confidence >= 50:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def aggregate_detailed(outputs: list[Stage2Output]) -> tuple[Determination, ConfidenceLevel]:
    """Fold per-candidate stage-2 answers into one determination."""
    determinations = [o.determination for o in outputs]
    if Determination.NOT_NOVEL in determinations:
        final = Determination.NOT_NOVEL
    elif all(d == Determination.NOVEL for d in determinations):
        final = Determination.NOVEL
    else:
        final = Determination.PARTIALLY_NOVEL

    levels = {o.confidence_level for o in outputs}
    if ConfidenceLevel.HIGH in levels:
        level = ConfidenceLevel.HIGH
    elif ConfidenceLevel.MEDIUM in levels:
        level = ConfidenceLevel.MEDIUM
    else:
        level = ConfidenceLevel.LOW
    return final, level


def _truncate_words(text: str, limit: int) -> str:
    words = text.split()
    if len(words) <= limit:
        return text
    return " ".join(words[:limit]) + " ..."


# ============================================================================
# LLM gateway
# ============================================================================


@dataclass
class LLMCallRecord:
    """One LLM round trip as persisted in novelty_llm_calls."""

    stage: str
    prompt: str
    candidate_id: str | None = None
    provider: str | None = None
    model: str | None = None
    response: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    elapsed_ms: float | None = None
    status: str = "success"
    error_message: str | None = None

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


CallRecorder = Callable[[LLMCallRecord], Awaitable[None]]


class NoveltyLLMGateway:
    """Prompt rendering, routed LLM calls and response parsing for both stages."""

    def __init__(
        self,
        registry: ProviderRegistry,
        prompts: PromptManager,
        *,
        temperature: float = 0.2,
        max_tokens: int = 2000,
        abstract_word_limit: int = 200,
        claims_char_limit: int = 4000,
    ):
        self._registry = registry
        self._prompts = prompts
        self._options = LLMOptions(temperature=temperature, max_tokens=max_tokens, response_format="json")
        self._abstract_words = abstract_word_limit
        self._claims_chars = claims_char_limit

    async def assess(
        self,
        invention: InventionSummary,
        candidates: list[NoveltyCandidate],
        *,
        on_call: CallRecorder | None = None,
    ) -> Stage1Output:
        """Screen the whole candidate set.

        Raises:
            LLMError: No provider answered, or the answer is not usable JSON.
        """
        prompt = self._render(
            SCREENING_TEMPLATE,
            STAGE1,
            invention=invention.model_dump(),
            candidates=[
                {**c.model_dump(mode="json"), "abstract": _truncate_words(c.abstract, self._abstract_words)}
                for c in candidates
            ],
        )
        text = await self._call(STAGE1, prompt, None, on_call)
        output = parse_llm_json(text, Stage1Output)
        if output is None:
            raise LLMError("Screening response is not valid assessment JSON", stage=STAGE1)
        return output

    async def resolve(
        self,
        invention: InventionSummary,
        candidate: NoveltyCandidate,
        claims: str = "",
        *,
        screening_reason: str = "",
        on_call: CallRecorder | None = None,
    ) -> Stage2Output:
        """Compare the invention with one ambiguous candidate.

        Raises:
            LLMError: No provider answered, or the answer is not usable JSON.
        """
        if len(claims) > self._claims_chars:
            claims = claims[: self._claims_chars] + " ..."
        prompt = self._render(
            DETAILED_TEMPLATE,
            STAGE2,
            invention=invention.model_dump(),
            candidate={
                **candidate.model_dump(mode="json"),
                "abstract": _truncate_words(candidate.abstract, self._abstract_words),
            },
            claims=claims,
            screening_reason=screening_reason,
        )
        text = await self._call(STAGE2, prompt, candidate.identifier, on_call)
        output = parse_llm_json(text, Stage2Output)
        if output is None:
            raise LLMError(f"Detailed response for {candidate.identifier} is not valid JSON", stage=STAGE2)
        return output

    def _render(self, template: str, stage: str, **kwargs: Any) -> str:
        try:
            return self._prompts.render(template, **kwargs)
        except PromptTemplateError as e:
            raise LLMError(f"Prompt rendering failed: {e}", stage=stage) from e

    async def _call(
        self,
        stage: str,
        prompt: str,
        candidate_id: str | None,
        on_call: CallRecorder | None,
    ) -> str:
        record = LLMCallRecord(stage=stage, prompt=prompt, candidate_id=candidate_id)
        try:
            result = await call_llm(
                self._registry,
                [ChatMessage(role="user", content=prompt)],
                self._options,
                purpose=f"novelty_{stage}",
            )
        except LLMError as e:
            record.status = "error"
            record.error_message = e.message
            if on_call is not None:
                await on_call(record)
            raise

        response = result.response
        record.provider = result.provider
        record.model = response.model
        record.response = response.text
        record.prompt_tokens = response.prompt_tokens
        record.completion_tokens = response.completion_tokens
        record.elapsed_ms = response.elapsed_ms
        if on_call is not None:
            await on_call(record)
        return response.text


# ============================================================================
# Orchestrator
# ============================================================================


def _match_candidate(reference: str, candidates: dict[str, NoveltyCandidate]) -> NoveltyCandidate | None:
    if reference in candidates:
        return candidates[reference]
    return candidates.get(canonicalize_patent_id(reference))


def _assessment_payload(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "runId": row["run_id"],
        "status": row["status"],
        "finalDetermination": row["final_determination"],
        "confidence": row["confidence"],
        "confidenceLevel": row["confidence_level"],
        "novelAspects": json.loads(row["novel_aspects_json"] or "[]"),
        "nonNovelAspects": json.loads(row["non_novel_aspects_json"] or "[]"),
        "remarks": row["final_remarks"],
        "errorMessage": row["error_message"],
        "createdAt": row["created_at"],
        "completedAt": row["completed_at"],
    }


class NoveltyAssessmentOrchestrator:
    """Candidate selection, stage sequencing and persistence of assessments.

    Example:
        assessment_id = await orchestrator.start(run_id, user_id)
        payload = await orchestrator.run(assessment_id)
    """

    def __init__(
        self,
        db: Database,
        gateway: NoveltyLLMGateway,
        *,
        intersecting_cap: int = 25,
        fallback_cap: int = 15,
        report_gate: "ReportGate | None" = None,
        auto_report: bool = True,
    ):
        self._db = db
        self._gateway = gateway
        self._intersecting_cap = intersecting_cap
        self._fallback_cap = fallback_cap
        self._report_gate = report_gate
        self._auto_report = auto_report

    async def select_candidates(self, run_id: str) -> list[NoveltyCandidate]:
        """Intersecting items by score, else the top scored items.

        Items without both title and abstract cannot be judged and are skipped.
        """
        rows = await self._db.get_unified_results(run_id)
        eligible = [
            r
            for r in rows
            if r["intersection_type"] != IntersectionType.NONE.value and r.get("title") and r.get("abstract")
        ]
        multi = {t.value for t in MULTI_VARIANT}
        intersecting = [r for r in eligible if r["intersection_type"] in multi]
        chosen = intersecting[: self._intersecting_cap] if intersecting else eligible[: self._fallback_cap]
        return [
            NoveltyCandidate(
                identifier=r["identifier"],
                content_type=r["content_type"],
                title=r["title"],
                abstract=r["abstract"],
                relevance=r.get("relevance"),
                found_in_variants=r["found_in_variants"],
                intersection_type=r["intersection_type"],
                score=r["score"],
                link=r.get("link"),
            )
            for r in chosen
        ]

    async def start(self, run_id: str, user_id: str, invention: InventionSummary | None = None) -> str:
        """Create an IN_PROGRESS assessment for a completed run.

        Raises:
            NotFoundError: Run missing or owned by another user.
            InvalidStateError: Run is not COMPLETED / COMPLETED_WITH_WARNINGS.
            InvalidParamsError: Run has no assessable candidates.
        """
        run = await self._db.get_run(run_id)
        if run is None or run["user_id"] != user_id:
            raise NotFoundError("run", run_id)
        if run["status"] not in {s.value for s in ASSESSABLE_STATUSES}:
            raise InvalidStateError(
                f"Run must be completed before assessment, got {run['status']}",
                current_state=run["status"],
            )

        if invention is None:
            summary = SearchBundle.model_validate_json(run["approved_bundle_json"]).source_summary
            invention = InventionSummary(
                title=summary.title or "Untitled invention",
                problem=summary.problem_statement,
                solution=summary.solution_summary,
            )

        candidates = await self.select_candidates(run_id)
        if not candidates:
            raise InvalidParamsError("Run has no results with title and abstract to assess", param_name="run_id")

        assessment_id = await self._db.insert_assessment(
            {
                "run_id": run_id,
                "user_id": user_id,
                "status": AssessmentStatus.IN_PROGRESS.value,
                "invention_json": invention.model_dump_json(),
                "candidates_json": json.dumps([c.model_dump(mode="json") for c in candidates], ensure_ascii=False),
            }
        )
        logger.info("Novelty assessment started", run_id=run_id, assessment_id=assessment_id, candidates=len(candidates))
        return assessment_id

    async def assess(self, run_id: str, user_id: str, invention: InventionSummary | None = None) -> dict[str, Any]:
        """start() followed by run()."""
        assessment_id = await self.start(run_id, user_id, invention)
        return await self.run(assessment_id)

    async def run(self, assessment_id: str) -> dict[str, Any]:
        """Drive an IN_PROGRESS assessment to its terminal status.

        LLM failures end in FAILED (or DOUBT for stage 2) rather than raising.
        Unexpected errors are logged with an error id and also end in FAILED.
        """
        row = await self._db.get_assessment(assessment_id)
        if row is None:
            raise NotFoundError("assessment", assessment_id)
        if row["status"] != AssessmentStatus.IN_PROGRESS.value:
            raise InvalidStateError(f"Assessment already {row['status']}", current_state=row["status"])

        invention = InventionSummary.model_validate_json(row["invention_json"])
        candidates = [NoveltyCandidate.model_validate(c) for c in json.loads(row["candidates_json"])]

        with LogContext(assessment_id=assessment_id, run_id=row["run_id"]):
            try:
                update = await self._run_stages(assessment_id, invention, candidates)
            except PriorArtError as e:
                error_id = e.error_id or generate_error_id()
                logger.error("Assessment failed", error_id=error_id, error_code=e.code.value, error=e.message)
                update = {"status": AssessmentStatus.FAILED.value, "error_message": f"{e.message} ({error_id})"}
            except Exception as e:
                error_id = generate_error_id()
                logger.exception("Assessment failed with internal error", error_id=error_id, error=str(e))
                update = {"status": AssessmentStatus.FAILED.value, "error_message": f"Internal error ({error_id})"}
            update["completed_at"] = now_iso()
            await self._db.update_assessment(assessment_id, update)
            logger.info(
                "Novelty assessment finished",
                status=update["status"],
                determination=update.get("final_determination"),
            )

            if (
                self._auto_report
                and self._report_gate is not None
                and AssessmentStatus(update["status"]) in REPORTABLE_STATUSES
            ):
                await self._generate_report(assessment_id)

        return await self.get_assessment(assessment_id)

    async def _run_stages(
        self,
        assessment_id: str,
        invention: InventionSummary,
        candidates: list[NoveltyCandidate],
    ) -> dict[str, Any]:
        recorder = self._recorder(assessment_id)

        try:
            stage1 = await self._gateway.assess(invention, candidates, on_call=recorder)
        except LLMError as e:
            logger.error("Screening failed", error=e.message)
            return {"status": AssessmentStatus.FAILED.value, "error_message": e.message}

        determination = screening_determination(stage1)
        if determination is None:
            return {
                "status": AssessmentStatus.FAILED.value,
                "stage1_json": stage1.model_dump_json(),
                "error_message": "Screening response carried no determination",
            }

        confidence = stage1.confidence if stage1.confidence is not None else DEFAULT_CONFIDENCE[determination]
        update: dict[str, Any] = {
            "status": AssessmentStatus(determination.value).value,
            "stage1_json": stage1.model_dump_json(),
            "novel_aspects_json": json.dumps(dedupe(stage1.novel_aspects), ensure_ascii=False),
            "non_novel_aspects_json": json.dumps(dedupe(stage1.non_novel_aspects), ensure_ascii=False),
            "confidence": confidence,
            "confidence_level": confidence_level_for(confidence).value,
            "final_determination": determination.value,
            "final_remarks": stage1.summary_remarks,
        }
        if determination != Determination.DOUBT:
            return update

        update.update(await self._resolve_doubt(invention, candidates, stage1, recorder))
        return update

    async def _resolve_doubt(
        self,
        invention: InventionSummary,
        candidates: list[NoveltyCandidate],
        stage1: Stage1Output,
        recorder: CallRecorder,
    ) -> dict[str, Any]:
        by_id = {c.identifier: c for c in candidates}
        ambiguous: list[tuple[NoveltyCandidate, str]] = []
        seen: set[str] = set()
        for item in stage1.patent_assessments:
            if item.relevance != Relevance.MEDIUM:
                continue
            candidate = _match_candidate(item.publication_number, by_id)
            if candidate is None:
                logger.warning("Screening referenced unknown candidate", reference=item.publication_number)
                continue
            if candidate.identifier not in seen:
                seen.add(candidate.identifier)
                ambiguous.append((candidate, item.reasoning))

        results: list[Stage2Result] = []
        for candidate, reason in ambiguous:
            claims = await self._claims_text(candidate)
            try:
                output = await self._gateway.resolve(
                    invention, candidate, claims, screening_reason=reason, on_call=recorder
                )
            except LLMError as e:
                logger.warning("Detailed comparison failed", candidate=candidate.identifier, error=e.message)
                results.append(Stage2Result(identifier=candidate.identifier, status="failed", error=e.message))
                continue
            results.append(Stage2Result(identifier=candidate.identifier, status="success", output=output))

        stage2_json = json.dumps([r.model_dump(mode="json") for r in results], ensure_ascii=False)
        outputs = [r.output for r in results if r.output is not None]
        if not outputs:
            logger.info("Doubt left unresolved", ambiguous=len(ambiguous))
            return {"stage2_json": stage2_json}

        final, level = aggregate_detailed(outputs)
        novel = dedupe(stage1.novel_aspects + [a for o in outputs for a in o.novel_aspects])
        non_novel = dedupe(stage1.non_novel_aspects + [a for o in outputs for a in o.non_novel_aspects])
        remarks = "\n\n".join(
            f"{r.identifier}: {r.output.technical_reasoning}"
            for r in results
            if r.output is not None and r.output.technical_reasoning
        )
        return {
            "status": AssessmentStatus.DOUBT_RESOLVED.value,
            "stage2_json": stage2_json,
            "final_determination": final.value,
            "confidence": RESOLVED_CONFIDENCE,
            "confidence_level": level.value,
            "novel_aspects_json": json.dumps(novel, ensure_ascii=False),
            "non_novel_aspects_json": json.dumps(non_novel, ensure_ascii=False),
            "final_remarks": remarks or stage1.summary_remarks,
        }

    async def _claims_text(self, candidate: NoveltyCandidate) -> str:
        if candidate.content_type != ContentType.PATENT.value:
            return ""
        detail = await self._db.get_patent_detail(candidate.identifier)
        if detail is None:
            return ""
        claims = detail["detail"].get("claims") or []
        return "\n".join(f"{i}. {claim}" for i, claim in enumerate(claims, start=1))

    def _recorder(self, assessment_id: str) -> CallRecorder:
        async def record(call: LLMCallRecord) -> None:
            await self._db.record_llm_call(assessment_id, call.to_row())

        return record

    async def _generate_report(self, assessment_id: str) -> None:
        if self._report_gate is None:
            return
        try:
            await self._report_gate.generate(assessment_id)
        except PriorArtError as e:
            logger.error("Automatic report generation failed", error_code=e.code.value, error=e.message)
        except OSError as e:
            logger.error("Automatic report generation failed", error=str(e))

    async def get_assessment(self, assessment_id: str, user_id: str | None = None) -> dict[str, Any]:
        """Assessment payload. One owned by another user is reported as missing."""
        row = await self._db.get_assessment(assessment_id)
        if row is None or (user_id is not None and row["user_id"] != user_id):
            raise NotFoundError("assessment", assessment_id)
        payload = _assessment_payload(row)
        if self._report_gate is not None:
            url = self._report_gate.report_url(row["run_id"], assessment_id, row["status"])
            if url is not None:
                payload["reportUrl"] = url
        return payload
