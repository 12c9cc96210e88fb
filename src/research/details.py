"""
Detail fetcher for shortlisted multi-variant items.

Only shortlisted I2/I3 items get full-text detail. Patent lookups run one at
a time with a fixed delay between provider calls; scholarly items are
already complete from the search pass and are marked done without a call.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from src.search.aggregator import MULTI_VARIANT, IntersectionType
from src.search.normalizer import ContentType, is_valid_detail_payload, project_patent_detail
from src.search.provider import DetailRequest, DetailResponse
from src.storage.database import Database
from src.utils.logging import get_logger
from src.utils.provider_registry import ProviderRegistry

logger = get_logger(__name__)

DEFAULT_DELAY_SECONDS = 2.0


class DetailStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DetailItemResult:
    identifier: str
    content_type: str
    status: DetailStatus
    requested_id: str | None = None
    cached: bool = False
    error: str | None = None


@dataclass
class DetailFetchSummary:
    items: list[DetailItemResult] = field(default_factory=list)
    api_calls: int = 0

    def count(self, status: DetailStatus) -> int:
        return sum(1 for item in self.items if item.status == status)


def candidate_patent_ids(publication_number: str) -> list[str]:
    """Identifier formats tried in order for a detail lookup."""
    return [f"patent/{publication_number}/en", publication_number]


class DetailFetcher:
    """Sequential detail retrieval for one run's shortlist.

    Example:
        fetcher = DetailFetcher(search_registry, db, fields=settings.details.fields)
        summary = await fetcher.fetch_for_run(run_id, deadline=time.monotonic() + 120)
    """

    def __init__(
        self,
        router: ProviderRegistry,
        db: Database,
        *,
        fields: list[str] | tuple[str, ...] = (),
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        ttl_days: int = 14,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._router = router
        self._db = db
        self._fields = tuple(fields)
        self._delay = delay_seconds
        self._ttl = timedelta(days=ttl_days)
        self._sleep = sleep
        self._called_once = False

    async def fetch_for_run(self, run_id: str, *, deadline: float | None = None) -> DetailFetchSummary:
        """Fetch detail for every shortlisted I2/I3 item of a run.

        Args:
            run_id: Run whose shortlist is processed.
            deadline: time.monotonic() value after which remaining items are
                marked skipped.

        Returns:
            Per-item outcomes. Failures never abort the remaining items.
        """
        rows = await self._db.get_unified_results(run_id, shortlisted_only=True)
        targets = [r for r in rows if IntersectionType(r["intersection_type"]) in MULTI_VARIANT]
        summary = DetailFetchSummary()
        self._called_once = False

        logger.info("Detail fetch started", run_id=run_id, items=len(targets))

        for row in targets:
            identifier = row["identifier"]

            if deadline is not None and time.monotonic() >= deadline:
                result = DetailItemResult(identifier, row["content_type"], DetailStatus.SKIPPED, error="run deadline reached")
            elif row["content_type"] == ContentType.SCHOLAR.value:
                result = DetailItemResult(identifier, row["content_type"], DetailStatus.COMPLETED)
            else:
                result = await self._fetch_patent(identifier, summary)

            summary.items.append(result)
            await self._db.set_result_detail_status(run_id, identifier, result.status.value, result.error)

        logger.info(
            "Detail fetch finished",
            run_id=run_id,
            completed=summary.count(DetailStatus.COMPLETED),
            failed=summary.count(DetailStatus.FAILED),
            skipped=summary.count(DetailStatus.SKIPPED),
            api_calls=summary.api_calls,
        )
        return summary

    async def _is_fresh(self, publication_number: str) -> bool:
        record = await self._db.get_patent_record(publication_number)
        if not record or not record.get("detail_fetched_at"):
            return False
        fetched = datetime.fromisoformat(record["detail_fetched_at"].replace("Z", "+00:00"))
        return datetime.now(UTC) - fetched < self._ttl

    async def _fetch_patent(self, publication_number: str, summary: DetailFetchSummary) -> DetailItemResult:
        if await self._is_fresh(publication_number):
            logger.debug("Detail cache hit", publication_number=publication_number)
            return DetailItemResult(publication_number, ContentType.PATENT.value, DetailStatus.COMPLETED, cached=True)

        last_error = "no identifier format returned a valid payload"
        for patent_id in candidate_patent_ids(publication_number):
            await self._pace()
            summary.api_calls += 1
            try:
                routed = await self._router.execute(DetailRequest(patent_id=patent_id, fields=self._fields))
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.debug("Detail lookup failed", patent_id=patent_id, error=last_error)
                continue

            response = routed.value
            if not isinstance(response, DetailResponse) or not is_valid_detail_payload(response.payload):
                last_error = f"invalid detail payload for {patent_id}"
                continue

            projection = project_patent_detail(response.payload)
            await self._db.save_patent_detail(
                publication_number,
                requested_id=patent_id,
                raw_payload=response.payload,
                projection=projection.model_dump(),
            )
            logger.info(
                "Patent detail stored",
                publication_number=publication_number,
                requested_id=patent_id,
                claims=projection.claims_count,
            )
            return DetailItemResult(
                publication_number, ContentType.PATENT.value, DetailStatus.COMPLETED, requested_id=patent_id
            )

        logger.warning("Patent detail unavailable", publication_number=publication_number, error=last_error)
        return DetailItemResult(publication_number, ContentType.PATENT.value, DetailStatus.FAILED, error=last_error)

    async def _pace(self) -> None:
        # Fixed delay between consecutive provider calls, none before the first
        if self._called_once and self._delay > 0:
            await self._sleep(self._delay)
        self._called_once = True
