"""
Query executor.

Issues the three query variants against the search provider router with
bounded parallelism, per-call retry, and an optional overall deadline.

Outcome rules:
- a variant succeeds iff its patent search succeeded
- the optional scholar search never fails a variant; its error is recorded
- a failed (or timed out) variant never aborts the other variants
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from src.search.bundle import VARIANT_ORDER, QueryVariant
from src.search.normalizer import PatentHit, ScholarHit, normalize_response
from src.search.provider import SearchEngine, SearchRequest, SearchResponse
from src.storage.database import now_iso
from src.utils.api_retry import APIRetryError, APIRetryPolicy, retry_api_call
from src.utils.backoff import calculate_total_delay
from src.utils.errors import ProviderError
from src.utils.logging import bind_context, get_logger
from src.utils.provider_registry import ProviderRegistry

logger = get_logger(__name__)

MAX_VARIANT_PARALLELISM = 3


class VariantStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class VariantOutcome:
    """Result of executing one query variant."""

    label: str
    query: str
    num: int
    page: int
    status: VariantStatus = VariantStatus.FAILED
    hits: list[PatentHit | ScholarHit] = field(default_factory=list)
    patent_count: int = 0
    scholar_count: int = 0
    api_calls: int = 0
    provider: str | None = None
    error: str | None = None
    scholar_error: str | None = None
    executed_at: str = field(default_factory=now_iso)

    @property
    def succeeded(self) -> bool:
        return self.status == VariantStatus.SUCCEEDED

    def to_row(self) -> dict[str, object]:
        """Column mapping for query_variant_executions."""
        return {
            "variant_label": self.label,
            "query_text": self.query,
            "num": self.num,
            "page": self.page,
            "status": self.status.value,
            "result_count": self.patent_count,
            "scholar_result_count": self.scholar_count,
            "api_call_count": self.api_calls,
            "provider": self.provider,
            "error_message": self.error,
            "scholar_error": self.scholar_error,
            "executed_at": self.executed_at,
        }


@dataclass
class ExecutionReport:
    """Outcomes of all variants of one run, keyed by variant label."""

    outcomes: dict[str, VariantOutcome] = field(default_factory=dict)
    timed_out: bool = False

    @property
    def succeeded_labels(self) -> list[str]:
        return [label for label, o in self.outcomes.items() if o.succeeded]

    @property
    def failed_labels(self) -> list[str]:
        return [label for label, o in self.outcomes.items() if not o.succeeded]

    @property
    def api_calls_made(self) -> int:
        return sum(o.api_calls for o in self.outcomes.values())

    def hits_by_variant(self) -> dict[str, list[PatentHit | ScholarHit]]:
        """Hits of succeeded variants only."""
        return {label: o.hits for label, o in self.outcomes.items() if o.succeeded}


def _describe_error(error: BaseException) -> str:
    if isinstance(error, APIRetryError) and error.last_error is not None:
        return f"{error} (last error: {error.last_error})"
    return str(error) or type(error).__name__


class QueryExecutor:
    """Runs query variants through the search provider router.

    Example:
        executor = QueryExecutor(search_registry, retry_policy=policy)
        report = await executor.execute(bundle.query_variants, include_scholar=True, timeout=600)
    """

    def __init__(
        self,
        router: ProviderRegistry,
        *,
        max_parallel: int = MAX_VARIANT_PARALLELISM,
        retry_policy: APIRetryPolicy | None = None,
        language: str | None = None,
        no_cache: bool | None = None,
    ):
        if not 1 <= max_parallel <= MAX_VARIANT_PARALLELISM:
            raise ValueError(f"max_parallel must be between 1 and {MAX_VARIANT_PARALLELISM}")

        self._router = router
        self._max_parallel = max_parallel
        self._policy = retry_policy or APIRetryPolicy()
        self._language = language
        self._no_cache = no_cache

    async def execute(
        self,
        variants: list[QueryVariant],
        *,
        include_scholar: bool = False,
        timeout: float | None = None,
    ) -> ExecutionReport:
        """Execute every variant and collect per-variant outcomes.

        Args:
            variants: Validated query variants.
            include_scholar: Also run each variant against google_scholar.
            timeout: Overall budget in seconds. Variants still pending at the
                deadline are cancelled and reported as failed.

        Returns:
            ExecutionReport in broad / baseline / narrow order.
        """
        if timeout is not None:
            worst_case = calculate_total_delay(self._policy.max_retries, self._policy.backoff)
            if worst_case >= timeout:
                logger.warning(
                    "Retry backoff budget exceeds search deadline",
                    backoff_seconds=worst_case,
                    timeout_seconds=timeout,
                )

        ordered = sorted(
            variants,
            key=lambda v: VARIANT_ORDER.index(v.label) if v.label in VARIANT_ORDER else len(VARIANT_ORDER),
        )
        semaphore = asyncio.Semaphore(self._max_parallel)
        outcomes = {
            v.label: VariantOutcome(label=v.label, query=v.q, num=v.num, page=v.page) for v in ordered
        }
        tasks = {
            v.label: asyncio.create_task(
                self._run_variant(v, outcomes[v.label], semaphore, include_scholar),
                name=f"variant:{v.label}",
            )
            for v in ordered
        }

        report = ExecutionReport(outcomes=outcomes)
        if not tasks:
            return report

        _, pending = await asyncio.wait(tasks.values(), timeout=timeout)

        if pending:
            report.timed_out = True
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            for label, task in tasks.items():
                if task in pending:
                    outcome = outcomes[label]
                    outcome.status = VariantStatus.FAILED
                    outcome.hits = []
                    outcome.error = f"timed out after {timeout}s"
                    logger.warning("Variant timed out", variant=label, timeout_seconds=timeout)

        logger.info(
            "Variant execution finished",
            succeeded=report.succeeded_labels,
            failed=report.failed_labels,
            api_calls=report.api_calls_made,
            timed_out=report.timed_out,
        )
        return report

    async def _run_variant(
        self,
        variant: QueryVariant,
        outcome: VariantOutcome,
        semaphore: asyncio.Semaphore,
        include_scholar: bool,
    ) -> None:
        bind_context(variant=variant.label)

        async with semaphore:
            try:
                response = await self._search(variant, SearchEngine.GOOGLE_PATENTS, outcome)
            except Exception as e:
                outcome.status = VariantStatus.FAILED
                outcome.error = _describe_error(e)
                outcome.executed_at = now_iso()
                logger.warning("Variant failed", variant=variant.label, error=outcome.error)
                return

            patent_hits = normalize_response(response)
            outcome.hits.extend(patent_hits)
            outcome.patent_count = len(patent_hits)
            outcome.provider = response.provider
            outcome.status = VariantStatus.SUCCEEDED

            if include_scholar:
                try:
                    scholar_response = await self._search(variant, SearchEngine.GOOGLE_SCHOLAR, outcome)
                except Exception as e:
                    outcome.scholar_error = _describe_error(e)
                    logger.warning(
                        "Scholar search failed, continuing with patent results",
                        variant=variant.label,
                        error=outcome.scholar_error,
                    )
                else:
                    scholar_hits = normalize_response(scholar_response)
                    outcome.hits.extend(scholar_hits)
                    outcome.scholar_count = len(scholar_hits)

            outcome.executed_at = now_iso()
            logger.info(
                "Variant succeeded",
                variant=variant.label,
                patents=outcome.patent_count,
                scholar=outcome.scholar_count,
                api_calls=outcome.api_calls,
            )

    async def _search(self, variant: QueryVariant, engine: SearchEngine, outcome: VariantOutcome) -> SearchResponse:
        request = SearchRequest(
            engine=engine,
            query=variant.q,
            num=variant.num,
            page=variant.page,
            language=self._language,
            no_cache=self._no_cache,
        )

        async def attempt(req: SearchRequest) -> SearchResponse:
            outcome.api_calls += 1
            routed = await self._router.execute(req)
            if not isinstance(routed.value, SearchResponse):
                raise ProviderError(
                    f"Provider returned {type(routed.value).__name__} for a search request",
                    provider=routed.provider,
                    retryable=False,
                )
            return routed.value

        return await retry_api_call(
            attempt,
            request,
            policy=self._policy,
            operation_name=f"{engine.value}:{variant.label}",
        )
