"""
Pytest fixtures and configuration for priorart tests.

=============================================================================
Test Classification
=============================================================================

- @pytest.mark.unit: Single class/function, no external dependencies
  - DEFAULT: Tests without marker are auto-classified as unit
- @pytest.mark.integration: Several services wired together over an
  in-memory database; the search provider and LLM are fakes
- @pytest.mark.e2e: Real SerpAPI / LLM backends (excluded by default)
- @pytest.mark.slow: Tests taking >5 seconds

No test talks to the network: search traffic goes through FakeSearchProvider
or httpx.MockTransport, LLM traffic through FakeLLMProvider.
"""

import asyncio
import copy
import os
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from src.filter.provider import (
    BaseLLMProvider,
    ChatMessage,
    LLMHealthStatus,
    LLMOptions,
    LLMResponse,
)
from src.search.provider import DetailRequest, DetailResponse, SearchEngine, SearchRequest, SearchResponse
from src.utils.errors import ProviderError
from src.utils.provider_registry import ProviderLimits

PROJECT_ROOT = Path(__file__).parent.parent

os.environ.setdefault("PRIORART_CONFIG_DIR", str(PROJECT_ROOT / "config"))


# =============================================================================
# Pytest Hooks for Test Classification
# =============================================================================


def pytest_configure(config):
    """Register custom markers for test classification."""
    config.addinivalue_line("markers", "unit: Unit tests with no external dependencies (fast, <1s/test)")
    config.addinivalue_line("markers", "integration: Services wired over an in-memory database (<5s/test)")
    config.addinivalue_line("markers", "e2e: End-to-end tests against real providers (excluded by default)")
    config.addinivalue_line("markers", "slow: Tests that take more than 5 seconds")


def pytest_collection_modifyitems(config, items):
    """Tests without an explicit classification marker are unit tests."""
    for item in items:
        has_classification = any(marker.name in ("unit", "integration", "e2e") for marker in item.iter_markers())
        if not has_classification:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Filesystem / Database Fixtures
# =============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db_path(temp_dir: Path) -> Path:
    return temp_dir / "test_priorart.db"


@pytest_asyncio.fixture
async def test_database(temp_db_path: Path):
    """File-backed database (WAL mode), for tests that need a real file."""
    from src.storage.database import Database

    db = Database(temp_db_path)
    await db.connect()
    await db.initialize_schema()

    yield db

    await db.close()


@pytest_asyncio.fixture
async def memory_database():
    """In-memory database for fast unit tests."""
    from src.storage.database import Database

    db = Database(":memory:")
    await db.connect()
    await db.initialize_schema()

    yield db

    await db.close()


# =============================================================================
# Bundle Fixtures
# =============================================================================


VALID_BUNDLE: dict[str, Any] = {
    "source_summary": {
        "title": "Self-heating lunch box",
        "problem_statement": "Meals go cold when no microwave is available",
        "solution_summary": "A lunch box with a thin-film heater powered by a removable battery",
    },
    "core_concepts": ["lunch box", "heater", "battery"],
    "synonym_groups": [["lunch box", "food container", "bento"]],
    "phrases": ["thin film heater"],
    "technical_features": ["temperature sensor"],
    "ambiguous_terms": [],
    "sensitive_tokens": [],
    "query_variants": [
        {"label": "broad", "q": "(lunch box OR food container) heater", "num": 20, "page": 1},
        {"label": "baseline", "q": "(lunch box OR food container) (heater OR heating) battery", "num": 20},
        {"label": "narrow", "q": '"thin film heater" lunch box battery temperature sensor', "num": 10},
    ],
    "serpapi_defaults": {"engine": "google_patents", "hl": "en", "no_cache": False},
}


@pytest.fixture
def bundle_payload() -> dict[str, Any]:
    """A structurally valid bundle payload (fresh copy per test)."""
    return copy.deepcopy(VALID_BUNDLE)


@pytest.fixture
def make_bundle_payload():
    """Factory: valid bundle payload with top-level keys overridden."""

    def _make(**overrides: Any) -> dict[str, Any]:
        payload = copy.deepcopy(VALID_BUNDLE)
        payload.update(overrides)
        return payload

    return _make


async def create_approved_bundle(db, user_id: str = "user-1", payload: dict[str, Any] | None = None):
    """Create, submit and approve a bundle. Returns the BundleRecord."""
    from src.search.bundle import BundleService

    service = BundleService(db)
    record = await service.create(user_id, payload or copy.deepcopy(VALID_BUNDLE))
    await service.submit_for_review(record.id, user_id)
    return await service.approve(record.id, user_id)


async def create_running_run(db, user_id: str = "user-1", include_scholar: bool = False) -> tuple[Any, str]:
    """Approve a bundle and admit a RUNNING run for it. Returns (record, run_id)."""
    from src.research.credits import CreditGate

    record = await create_approved_bundle(db, user_id)
    balance = await db.get_user_credits(user_id)
    total = balance["total_credits"] if balance else 0
    used = balance["used_credits"] if balance else 0
    await db.set_user_credits(user_id, max(total, used + 1), used)
    run_id = await CreditGate(db).admit(record, user_id=user_id, include_scholar=include_scholar)
    return record, run_id


@pytest.fixture
def approved_bundle(memory_database):
    """Factory fixture around create_approved_bundle bound to memory_database."""

    async def _make(user_id: str = "user-1", payload: dict[str, Any] | None = None):
        return await create_approved_bundle(memory_database, user_id, payload)

    return _make


# =============================================================================
# Provider Fakes
# =============================================================================


def patent_item(number: str, title: str = "", snippet: str = "") -> dict[str, Any]:
    """google_patents organic result as SerpAPI returns it."""
    return {
        "publication_number": number,
        "patent_id": f"patent/{number}/en",
        "title": title or f"Patent {number}",
        "snippet": snippet or f"Abstract of {number}",
        "link": f"https://patents.google.com/patent/{number}/en",
    }


class FakeSearchProvider:
    """Scripted search provider implementing the registry capability surface.

    Args:
        results: query text -> list of raw patent items (or an Exception to raise,
            or a list of outcomes consumed one per call).
        scholar: query text -> list of raw scholar items (or an Exception).
        details: patent_id -> payload dict (or an Exception).
    """

    def __init__(
        self,
        results: dict[str, Any] | None = None,
        *,
        scholar: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
        name: str = "fake",
        healthy: bool = True,
        delay: float = 0.0,
    ):
        self._name = name
        self.results = results or {}
        self.scholar = scholar or {}
        self.details = details or {}
        self.healthy = healthy
        self.delay = delay
        self.calls: list[SearchRequest | DetailRequest] = []
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    @staticmethod
    def _resolve(table: dict[str, Any], key: str, default: Any) -> Any:
        outcome = table.get(key, default)
        if isinstance(outcome, tuple):
            # Sequence of outcomes, one per call; the last one repeats
            outcome, rest = outcome[0], outcome[1:]
            if rest:
                table[key] = rest if len(rest) > 1 else rest[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def execute(self, request: SearchRequest | DetailRequest) -> SearchResponse | DetailResponse:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        if isinstance(request, DetailRequest):
            missing = ProviderError(f"no detail for {request.patent_id}", provider=self._name, retryable=False)
            payload = self._resolve(self.details, request.patent_id, missing)
            return DetailResponse(provider=self._name, requested_id=request.patent_id, payload=payload)

        table = self.scholar if request.engine == SearchEngine.GOOGLE_SCHOLAR else self.results
        items = self._resolve(table, request.query, [])
        return SearchResponse(provider=self._name, engine=request.engine, query=request.query, items=items)

    def get_limits(self) -> ProviderLimits:
        return ProviderLimits(max_parallel=3)

    def get_cost_estimate(self, request: Any) -> float:
        return 1.0

    async def is_healthy(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        self.closed = True

    def search_calls(self, engine: SearchEngine = SearchEngine.GOOGLE_PATENTS) -> list[SearchRequest]:
        return [c for c in self.calls if isinstance(c, SearchRequest) and c.engine == engine]

    def detail_calls(self) -> list[DetailRequest]:
        return [c for c in self.calls if isinstance(c, DetailRequest)]


class FakeLLMProvider(BaseLLMProvider):
    """LLM backend returning canned texts in order (the last one repeats).

    A response given as an Exception instance is returned as an error response.
    """

    def __init__(self, responses: list[str | Exception], *, name: str = "fake-llm", healthy: bool = True):
        super().__init__(name, model="fake-model")
        self._responses = list(responses)
        self._healthy = healthy
        self.prompts: list[str] = []

    async def chat(self, messages: list[ChatMessage], options: LLMOptions | None = None) -> LLMResponse:
        self.prompts.append(messages[-1].content)
        outcome = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(outcome, Exception):
            return LLMResponse.make_error(str(outcome), self._model, self._name)
        return LLMResponse.success(
            outcome,
            self._model,
            self._name,
            elapsed_ms=5.0,
            usage={"prompt_tokens": 100, "completion_tokens": 50},
        )

    async def get_health(self) -> LLMHealthStatus:
        if not self._healthy:
            return LLMHealthStatus.unhealthy("down")
        return LLMHealthStatus.healthy([self._model])


@pytest.fixture
def fake_search_provider():
    """Factory for FakeSearchProvider."""
    return FakeSearchProvider


@pytest.fixture
def fake_llm_provider():
    """Factory for FakeLLMProvider."""
    return FakeLLMProvider
