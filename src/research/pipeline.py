"""
Search run pipeline.

Wraps one execution of an approved bundle:

    start()    bundle checks -> credit gate (atomic run creation) -> run_id
    execute()  variants -> normalize -> aggregate + shortlist -> persist
               -> optional detail fetch -> terminal status

start() is the synchronous admission step; execute() is meant to run as a
detached background task while callers poll get_status().

Timeouts:
- the search phase is bounded by ``run_timeout``; unfinished variants are
  cancelled and recorded as failed
- detail fetch only uses what is left of that budget
- a guard of ``run_timeout + grace`` around execute() marks the run FAILED
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from src.research.credits import CreditGate
from src.research.details import DetailFetcher
from src.research.state import FINAL_FROM_RUNNING, RunStateMachine, RunStatus, resolve_outcome
from src.search.aggregator import IntersectionType, RankAggregator, UnifiedResult
from src.search.bundle import VARIANT_ORDER, BundleService, BundleStatus, SearchBundle
from src.search.executor import ExecutionReport, QueryExecutor
from src.search.normalizer import ContentType, PatentHit, ScholarHit, canonicalize_patent_id
from src.search.relevance import extract_search_terms, score_content
from src.storage.database import Database, now_iso
from src.utils.errors import InvalidStateError, NotFoundError, PriorArtError, generate_error_id
from src.utils.logging import LogContext, get_logger

if TYPE_CHECKING:
    from src.report.gate import ReportGate

logger = get_logger(__name__)

DEFAULT_RUN_TIMEOUT = 600.0
DEFAULT_GRACE_SECONDS = 120.0


class Level0Result(BaseModel):
    """Locally matched item attached to a run outside cross-variant aggregation."""

    identifier: str = Field(..., min_length=1)
    content_type: ContentType = ContentType.PATENT
    title: str = ""
    abstract: str = ""
    link: str | None = None
    match_score: float | None = Field(default=None, description="Local matcher score, display only")


@dataclass
class RunOutcome:
    """Summary returned by SearchRunService.execute()."""

    run_id: str
    status: RunStatus
    unique_results: int = 0
    shortlisted: int = 0
    api_calls: int = 0
    errors: list[str] = field(default_factory=list)


def _result_payload(row: dict[str, Any]) -> dict[str, Any]:
    ranks = row.get("ranks") or {}
    return {
        "identifier": row["identifier"],
        "contentType": row["content_type"],
        "title": row.get("title") or "",
        "abstract": row.get("abstract") or "",
        "link": row.get("link"),
        "ranks": {label: ranks.get(label) for label in VARIANT_ORDER},
        "foundInVariants": row.get("found_in_variants") or [],
        "intersectionType": row["intersection_type"],
        "score": row["score"],
        "shortlisted": bool(row.get("shortlisted")),
        "relevance": row.get("relevance"),
        "detailStatus": row.get("detail_status"),
    }


class SearchRunService:
    """Admission, background execution and status of search runs.

    Example:
        run_id = await service.start(bundle_id, user_id, include_scholar=True)
        asyncio.create_task(service.execute(run_id))
        payload = await service.get_status(run_id, user_id)
    """

    def __init__(
        self,
        db: Database,
        *,
        bundles: BundleService,
        credit_gate: CreditGate,
        executor: QueryExecutor,
        aggregator: RankAggregator,
        state_machine: RunStateMachine,
        detail_fetcher: DetailFetcher | None = None,
        report_gate: "ReportGate | None" = None,
        run_timeout: float = DEFAULT_RUN_TIMEOUT,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        fetch_details: bool = True,
    ):
        self._db = db
        self._bundles = bundles
        self._credits = credit_gate
        self._executor = executor
        self._aggregator = aggregator
        self._state = state_machine
        self._details = detail_fetcher
        self._report_gate = report_gate
        self._timeout = run_timeout
        self._grace = grace_seconds
        self._fetch_details = fetch_details

    # =========================================================================
    # Admission
    # =========================================================================

    async def start(self, bundle_id: str, user_id: str, *, include_scholar: bool = False) -> str:
        """Admit a run for an approved bundle.

        Returns:
            The RUNNING run's ID. Nothing has been sent to the provider yet.

        Raises:
            NotFoundError: Bundle missing or owned by another user.
            InvalidStateError: Bundle is not APPROVED.
            InsufficientCreditError: No remaining credit; no run is started.
        """
        record = await self._bundles.get(bundle_id, user_id)
        if record.status != BundleStatus.APPROVED:
            raise InvalidStateError(
                f"Bundle must be APPROVED to run, got {record.status.value}",
                current_state=record.status.value,
            )
        return await self._credits.admit(record, user_id=user_id, include_scholar=include_scholar)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, run_id: str) -> RunOutcome:
        """Execute an admitted run to a terminal status. Never raises for run failures."""
        with LogContext(run_id=run_id):
            try:
                async with asyncio.timeout(self._timeout + self._grace):
                    return await self._execute(run_id)
            except TimeoutError:
                message = f"Run exceeded {self._timeout + self._grace:.0f}s"
                logger.error("Run timed out", timeout_seconds=self._timeout + self._grace)
                return await self._fail(run_id, message)
            except PriorArtError as e:
                error_id = e.error_id or generate_error_id()
                logger.error("Run failed", error_id=error_id, error_code=e.code.value, error=e.message)
                return await self._fail(run_id, f"{e.code.value}: {e.message} ({error_id})")
            except Exception as e:
                error_id = generate_error_id()
                logger.exception("Run failed with internal error", error_id=error_id, error=str(e))
                return await self._fail(run_id, f"Internal error ({error_id})")

    async def _execute(self, run_id: str) -> RunOutcome:
        started = time.monotonic()
        row = await self._db.get_run(run_id)
        if row is None:
            raise NotFoundError("run", run_id)
        if row["status"] != RunStatus.RUNNING.value:
            raise InvalidStateError(f"Run is not RUNNING: {row['status']}", current_state=row["status"])

        bundle = SearchBundle.model_validate_json(row["approved_bundle_json"])
        logger.info("Run started", variants=len(bundle.query_variants), include_scholar=bool(row["include_scholar"]))

        report = await self._executor.execute(
            bundle.query_variants,
            include_scholar=bool(row["include_scholar"]),
            timeout=self._timeout,
        )
        for outcome in report.outcomes.values():
            await self._db.record_variant_execution(run_id, outcome.to_row())

        results = self._aggregate(bundle, report)
        await self._cache_records(report)
        await self._db.insert_unified_results(run_id, [r.to_row() for r in results])

        status = resolve_outcome(len(report.succeeded_labels), len(report.failed_labels))
        errors = [f"{o.label}: {o.error}" for o in report.outcomes.values() if o.error]

        api_calls = report.api_calls_made
        if status != RunStatus.FAILED and self._fetch_details and self._details is not None:
            deadline = started + self._timeout
            if time.monotonic() < deadline:
                try:
                    summary = await self._details.fetch_for_run(run_id, deadline=deadline)
                    api_calls += summary.api_calls
                except PriorArtError as e:
                    # Detail fetch is optional; search results stay committed
                    logger.error("Detail fetch aborted", error_code=e.code.value, error=e.message)
                    errors.append(f"details: {e.message}")
            else:
                logger.warning("Detail fetch skipped, run budget exhausted")

        await self._state.finish(
            run_id,
            status,
            error_message="All query variants failed" if status == RunStatus.FAILED else None,
            extra={
                "api_calls_made": api_calls,
                "variants_succeeded": len(report.succeeded_labels),
                "variants_failed": len(report.failed_labels),
            },
        )
        return RunOutcome(
            run_id=run_id,
            status=status,
            unique_results=len(results),
            shortlisted=sum(1 for r in results if r.shortlisted),
            api_calls=api_calls,
            errors=errors,
        )

    def _aggregate(self, bundle: SearchBundle, report: ExecutionReport) -> list[UnifiedResult]:
        results = self._aggregator.aggregate(report.hits_by_variant())
        terms = extract_search_terms(bundle)
        for result in results:
            result.relevance = score_content(result.title, result.abstract, terms).relevance_percent
        return results

    async def _cache_records(self, report: ExecutionReport) -> None:
        seen: set[str] = set()
        for hits in report.hits_by_variant().values():
            for hit in hits:
                if hit.identifier in seen:
                    continue
                seen.add(hit.identifier)
                if isinstance(hit, PatentHit):
                    await self._db.upsert_patent_record(
                        {
                            "publication_number": hit.identifier,
                            "title": hit.title or None,
                            "abstract": hit.abstract or None,
                            "link": hit.link,
                            "pdf_link": hit.pdf_link,
                            "assignee": hit.assignee,
                            "inventor": hit.inventor,
                            "priority_date": hit.priority_date,
                            "publication_date": hit.publication_date,
                        }
                    )
                elif isinstance(hit, ScholarHit):
                    await self._db.upsert_scholar_record(
                        {
                            "identifier": hit.identifier,
                            "title": hit.title or None,
                            "snippet": hit.abstract or None,
                            "link": hit.link,
                            "doi": hit.doi,
                            "result_id": hit.result_id,
                            "publication_info": hit.publication_info,
                            "cited_by_count": hit.cited_by_count,
                        }
                    )

    async def _fail(self, run_id: str, message: str) -> RunOutcome:
        try:
            await self._state.finish(run_id, RunStatus.FAILED, error_message=message)
        except InvalidStateError as e:
            logger.warning("Run already terminal, failure not recorded", error=e.message)
        except PriorArtError as e:
            logger.error("Could not mark run failed", error_code=e.code.value, error=e.message)
        return RunOutcome(run_id=run_id, status=RunStatus.FAILED, errors=[message])

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_run(self, run_id: str, user_id: str | None = None) -> dict[str, Any]:
        """Load a run row. A run owned by another user is reported as missing."""
        row = await self._db.get_run(run_id)
        if row is None or (user_id is not None and row["user_id"] != user_id):
            raise NotFoundError("run", run_id)
        return row

    async def get_status(self, run_id: str, user_id: str | None = None) -> dict[str, Any]:
        """Status payload polled by callers."""
        row = await self.get_run(run_id, user_id)
        results = await self._db.get_unified_results(run_id)
        variants = await self._db.get_variant_executions(run_id)

        payload: dict[str, Any] = {
            "runId": run_id,
            "bundleId": row["bundle_id"],
            "status": row["status"],
            "startedAt": row["started_at"],
            "finishedAt": row["finished_at"],
            "creditsConsumed": row["credits_consumed"],
            "apiCallsMade": row["api_calls_made"],
            "errorMessage": row["error_message"],
            "variants": [
                {
                    "label": v["variant_label"],
                    "query": v["query_text"],
                    "status": v["status"],
                    "resultCount": v["result_count"],
                    "scholarResultCount": v["scholar_result_count"],
                    "apiCallCount": v["api_call_count"],
                    "error": v["error_message"],
                    "scholarError": v["scholar_error"],
                    "executedAt": v["executed_at"],
                }
                for v in variants
            ],
            "results": [_result_payload(r) for r in results],
        }

        assessment = await self._db.get_latest_assessment(run_id)
        if assessment is not None:
            novelty: dict[str, Any] = {
                "id": assessment["id"],
                "status": assessment["status"],
                "finalDetermination": assessment["final_determination"],
                "confidenceLevel": assessment["confidence_level"],
                "createdAt": assessment["created_at"],
                "completedAt": assessment["completed_at"],
            }
            if self._report_gate is not None:
                url = self._report_gate.report_url(run_id, assessment["id"], assessment["status"])
                if url is not None:
                    novelty["reportUrl"] = url
            payload["noveltyAssessment"] = novelty

        return payload

    # =========================================================================
    # Level-0 attachment
    # =========================================================================

    async def attach_level0_results(
        self,
        run_id: str,
        items: list[Level0Result | dict[str, Any]],
        *,
        user_id: str | None = None,
    ) -> int:
        """Attach locally matched items as NONE-intersection rows.

        Items never take part in aggregation or the shortlist. Identifiers
        already present in the run's unified table are left untouched.

        Returns:
            Number of rows added.

        Raises:
            InvalidStateError: Run is still RUNNING or was refused for credit.
        """
        row = await self.get_run(run_id, user_id)
        # Only finished runs; a RUNNING run would collide with its own results
        if RunStatus(row["status"]) not in FINAL_FROM_RUNNING:
            raise InvalidStateError(
                f"Level-0 results need a finished run, got {row['status']}", current_state=row["status"]
            )

        parsed = [i if isinstance(i, Level0Result) else Level0Result.model_validate(i) for i in items]
        existing = {r["identifier"] for r in await self._db.get_unified_results(run_id)}

        new_rows: list[dict[str, Any]] = []
        for item in parsed:
            identifier = (
                canonicalize_patent_id(item.identifier) if item.content_type == ContentType.PATENT else item.identifier
            )
            if identifier in existing:
                continue
            existing.add(identifier)
            result = UnifiedResult(
                identifier=identifier,
                content_type=item.content_type,
                title=item.title,
                abstract=item.abstract,
                link=item.link,
                intersection_type=IntersectionType.NONE,
            )
            new_rows.append(result.to_row())

        if new_rows:
            await self._db.insert_unified_results(run_id, new_rows)
        await self._db.update_run(
            run_id,
            {
                "level0_results_json": json.dumps([i.model_dump(mode="json") for i in parsed], ensure_ascii=False),
                "level0_attached_at": now_iso(),
            },
        )
        logger.info("Level-0 results attached", run_id=run_id, received=len(parsed), added=len(new_rows))
        return len(new_rows)
