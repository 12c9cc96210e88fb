"""
Main entry point for priorart.

build_app() is the composition root: every service is constructed here
once and handed its collaborators explicitly.
"""

import argparse
import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from src.filter.llm import build_llm_registry
from src.filter.novelty import NoveltyAssessmentOrchestrator, NoveltyLLMGateway
from src.report.gate import ReportGate
from src.report.pdf import ReportRenderer
from src.research.credits import CreditGate
from src.research.details import DetailFetcher
from src.research.pipeline import RunOutcome, SearchRunService
from src.research.state import RunStateMachine
from src.search.aggregator import RankAggregator
from src.search.apis.rate_limiter import EndpointLimit, ProviderRateLimiter
from src.search.apis.serpapi import SerpApiClient
from src.search.bundle import BundleService
from src.search.executor import QueryExecutor
from src.search.provider import SearchEngine
from src.storage.database import Database
from src.utils.api_retry import APIRetryPolicy
from src.utils.backoff import BackoffConfig
from src.utils.config import Settings, ensure_directories, get_config_dir, get_project_root, get_settings
from src.utils.errors import PriorArtError
from src.utils.logging import configure_logging, get_logger
from src.utils.prompt_manager import PromptManager
from src.utils.provider_registry import ProviderRegistry

logger = get_logger(__name__)


@dataclass
class PriorArtApp:
    """Wired services plus the background tasks of started runs."""

    settings: Settings
    db: Database
    search_registry: ProviderRegistry
    llm_registry: ProviderRegistry
    bundles: BundleService
    credits: CreditGate
    runs: SearchRunService
    novelty: NoveltyAssessmentOrchestrator
    reports: ReportGate
    _tasks: dict[str, asyncio.Task[RunOutcome]] = field(default_factory=dict)

    async def start_run(self, bundle_id: str, user_id: str, *, include_scholar: bool = False) -> str:
        """Admit a run and execute it in the background. Returns immediately."""
        run_id = await self.runs.start(bundle_id, user_id, include_scholar=include_scholar)
        task = asyncio.create_task(self.runs.execute(run_id), name=f"run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run_id, None))
        return run_id

    async def wait_for_run(self, run_id: str) -> RunOutcome | None:
        task = self._tasks.get(run_id)
        return await task if task is not None else None

    async def close(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self.search_registry.close_all()
        await self.llm_registry.close_all()
        await self.db.close()
        logger.info("priorart shut down")


def _resolve_path(path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else get_project_root() / p


async def build_app(settings: Settings | None = None, *, database_path: str | Path | None = None) -> PriorArtApp:
    """Construct and connect every service."""
    settings = settings or get_settings()

    db = Database(database_path or _resolve_path(settings.storage.database_path))
    await db.connect()
    await db.initialize_schema()

    limiter = ProviderRateLimiter(
        default=EndpointLimit(
            min_interval_seconds=settings.serpapi.min_interval_seconds,
            max_parallel=settings.serpapi.max_parallel,
        ),
        limits={
            SearchEngine.GOOGLE_PATENTS_DETAILS.value: EndpointLimit(
                min_interval_seconds=settings.details.delay_seconds,
                max_parallel=1,
            )
        },
    )
    search_registry = ProviderRegistry("search")
    search_registry.register(SerpApiClient(settings.serpapi, limiter), priority=settings.serpapi.priority)

    executor = QueryExecutor(
        search_registry,
        max_parallel=settings.search.max_parallel_variants,
        retry_policy=APIRetryPolicy(
            max_retries=settings.search.max_retries,
            backoff=BackoffConfig(
                base_delay=settings.search.retry_base_delay,
                max_delay=settings.search.retry_max_delay,
            ),
        ),
        language=settings.serpapi.language,
        no_cache=settings.serpapi.no_cache,
    )
    aggregator = RankAggregator(
        rrf_k=settings.search.rank_fusion_k,
        intersection_cap=settings.search.shortlist_intersection_cap,
        fallback_cap=settings.search.shortlist_fallback_cap,
    )

    renderer = ReportRenderer(db, _resolve_path(settings.storage.reports_dir))
    reports = ReportGate(db, renderer, public_base_url=settings.general.public_base_url)

    bundles = BundleService(db)
    credits = CreditGate(db, persist_refused_runs=settings.run.persist_refused_runs)
    runs = SearchRunService(
        db,
        bundles=bundles,
        credit_gate=credits,
        executor=executor,
        aggregator=aggregator,
        state_machine=RunStateMachine(db),
        detail_fetcher=DetailFetcher(
            search_registry,
            db,
            fields=settings.details.fields,
            delay_seconds=settings.details.delay_seconds,
            ttl_days=settings.details.ttl_days,
        ),
        report_gate=reports,
        run_timeout=settings.run.timeout_seconds,
        grace_seconds=settings.run.grace_seconds,
        fetch_details=settings.details.fetch_during_run,
    )

    llm_registry = build_llm_registry(settings.llm)
    gateway = NoveltyLLMGateway(
        llm_registry,
        PromptManager(get_config_dir() / "prompts"),
        temperature=settings.llm.temperature,
        max_tokens=settings.llm.max_tokens,
        abstract_word_limit=settings.novelty.abstract_word_limit,
        claims_char_limit=settings.novelty.claims_char_limit,
    )
    novelty = NoveltyAssessmentOrchestrator(
        db,
        gateway,
        intersecting_cap=settings.novelty.intersecting_cap,
        fallback_cap=settings.novelty.fallback_cap,
        report_gate=reports,
        auto_report=settings.novelty.auto_report,
    )

    logger.info(
        "priorart initialized",
        version=settings.general.version,
        search_providers=search_registry.list_providers(),
        llm_providers=llm_registry.list_providers(),
    )
    return PriorArtApp(
        settings=settings,
        db=db,
        search_registry=search_registry,
        llm_registry=llm_registry,
        bundles=bundles,
        credits=credits,
        runs=runs,
        novelty=novelty,
        reports=reports,
    )


# ============================================================================
# CLI
# ============================================================================


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def _dispatch(app: PriorArtApp, args: argparse.Namespace) -> None:
    if args.command == "init":
        _print({"ok": True, "database": str(app.db.db_path)})

    elif args.command == "bundle":
        payload = json.loads(Path(args.file).read_text(encoding="utf-8"))
        record = await app.bundles.create(args.user, payload)
        if args.approve:
            await app.bundles.submit_for_review(record.id, args.user)
            record = await app.bundles.approve(record.id, args.user)
        _print({"bundleId": record.id, "status": record.status.value})

    elif args.command == "credits":
        if args.total is not None:
            await app.db.set_user_credits(args.user, args.total)
        balance = await app.credits.get_remaining(args.user)
        _print(balance.to_dict())

    elif args.command == "run":
        run_id = await app.start_run(args.bundle, args.user, include_scholar=args.scholar)
        await app.wait_for_run(run_id)
        _print(await app.runs.get_status(run_id, args.user))

    elif args.command == "status":
        _print(await app.runs.get_status(args.run, args.user))

    elif args.command == "assess":
        _print(await app.novelty.assess(args.run, args.user))

    elif args.command == "report":
        path = await app.reports.get_report(args.assessment, args.user)
        _print({"assessmentId": args.assessment, "path": str(path)})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="priorart", description="Prior-art search and novelty assessment")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create directories and the database schema")

    bundle = sub.add_parser("bundle", help="Create a search bundle from a JSON file")
    bundle.add_argument("--file", "-f", required=True)
    bundle.add_argument("--user", "-u", required=True)
    bundle.add_argument("--approve", action="store_true", help="Submit and approve immediately")

    credits = sub.add_parser("credits", help="Show (or set) a user's search credits")
    credits.add_argument("--user", "-u", required=True)
    credits.add_argument("--total", type=int)

    run = sub.add_parser("run", help="Execute an approved bundle and wait for the result")
    run.add_argument("--bundle", "-b", required=True)
    run.add_argument("--user", "-u", required=True)
    run.add_argument("--scholar", action="store_true", help="Also search Google Scholar")

    status = sub.add_parser("status", help="Show a run's status payload")
    status.add_argument("--run", "-r", required=True)
    status.add_argument("--user", "-u")

    assess = sub.add_parser("assess", help="Run the novelty assessment for a completed run")
    assess.add_argument("--run", "-r", required=True)
    assess.add_argument("--user", "-u", required=True)

    report = sub.add_parser("report", help="Render (if needed) and locate an assessment report")
    report.add_argument("--assessment", "-a", required=True)
    report.add_argument("--user", "-u")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()

    ensure_directories(settings)
    configure_logging(
        log_level=settings.general.log_level,
        log_file=get_project_root() / settings.general.logs_dir / "priorart.log",
        json_format=True,
    )

    async def async_main() -> int:
        app = await build_app(settings)
        try:
            await _dispatch(app, args)
        except PriorArtError as e:
            _print(e.to_dict())
            return 1
        finally:
            await app.close()
        return 0

    return asyncio.run(async_main())


if __name__ == "__main__":
    raise SystemExit(main())
