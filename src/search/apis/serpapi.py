"""
SerpAPI client (Google Patents, Google Scholar, Google Patents details).

Every call goes through the shared ProviderRateLimiter keyed by engine, so
search and detail calls each respect their own endpoint budget.
"""

import time
from typing import Any

import httpx

from src.search.apis.base import BaseSearchClient
from src.search.apis.rate_limiter import ProviderRateLimiter
from src.search.provider import (
    DetailRequest,
    DetailResponse,
    SearchEngine,
    SearchRequest,
    SearchResponse,
)
from src.utils.config import SerpApiConfig
from src.utils.errors import ProviderError
from src.utils.logging import get_logger
from src.utils.provider_registry import ProviderLimits

logger = get_logger(__name__)

# SerpAPI reports an empty result page through the error field
_NO_RESULTS_MARKER = "hasn't returned any results"


class SerpApiClient(BaseSearchClient):
    """SerpAPI search provider."""

    def __init__(
        self,
        config: SerpApiConfig,
        rate_limiter: ProviderRateLimiter,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            "serpapi",
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            transport=transport,
        )
        self._config = config
        self._rate_limiter = rate_limiter

    # =========================================================================
    # Capability surface
    # =========================================================================

    def get_limits(self) -> ProviderLimits:
        return ProviderLimits(
            min_interval_seconds=self._config.min_interval_seconds,
            max_parallel=self._config.max_parallel,
            max_results=100,
        )

    def get_cost_estimate(self, request: Any) -> float:
        return self._config.cost_per_call

    async def is_healthy(self) -> bool:
        return self._config.enabled and bool(self._config.api_key) and not self.is_closed

    async def execute(self, request: SearchRequest | DetailRequest) -> SearchResponse | DetailResponse:
        if isinstance(request, DetailRequest):
            return await self.get_details(request)
        return await self.search(request)

    # =========================================================================
    # Endpoints
    # =========================================================================

    async def search(self, request: SearchRequest) -> SearchResponse:
        """Ranked search on google_patents or google_scholar."""
        params: dict[str, Any] = {
            "engine": request.engine.value,
            "q": request.query,
            "num": request.num,
            "hl": request.language or self._config.language,
            "no_cache": _bool_param(self._config.no_cache if request.no_cache is None else request.no_cache),
        }
        if request.start:
            params["start"] = request.start

        start = time.perf_counter()
        data = await self._get_json(request.engine.value, params)
        elapsed_ms = (time.perf_counter() - start) * 1000

        error = data.get("error")
        if error and _NO_RESULTS_MARKER not in str(error):
            raise ProviderError(f"SerpAPI error: {error}", provider=self.name, retryable=False)

        items = data.get("organic_results") or []
        if not isinstance(items, list):
            raise ProviderError("SerpAPI returned malformed organic_results", provider=self.name, retryable=False)

        total = (data.get("search_information") or {}).get("total_results")
        logger.info(
            "SerpAPI search completed",
            engine=request.engine.value,
            query=request.query[:80],
            result_count=len(items),
            elapsed_ms=round(elapsed_ms, 1),
        )
        return SearchResponse(
            provider=self.name,
            engine=request.engine,
            query=request.query,
            items=[item for item in items if isinstance(item, dict)],
            total_results=total if isinstance(total, int) and total >= 0 else None,
            elapsed_ms=elapsed_ms,
        )

    async def get_details(self, request: DetailRequest) -> DetailResponse:
        """Patent detail lookup (google_patents_details)."""
        params: dict[str, Any] = {
            "engine": SearchEngine.GOOGLE_PATENTS_DETAILS.value,
            "patent_id": request.patent_id,
            "hl": self._config.language,
            "no_cache": _bool_param(self._config.no_cache),
        }
        if request.fields:
            params["json_restrictor"] = ",".join(request.fields)

        start = time.perf_counter()
        data = await self._get_json(SearchEngine.GOOGLE_PATENTS_DETAILS.value, params)
        elapsed_ms = (time.perf_counter() - start) * 1000

        if data.get("error"):
            raise ProviderError(
                f"SerpAPI details error: {data['error']}",
                provider=self.name,
                retryable=False,
            )

        return DetailResponse(
            provider=self.name,
            requested_id=request.patent_id,
            payload=data,
            elapsed_ms=elapsed_ms,
        )

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _get_json(self, endpoint: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self._config.api_key:
            raise ProviderError("SerpAPI key is not configured", provider=self.name, retryable=False)

        session = await self._get_session()
        async with self._rate_limiter.slot(endpoint):
            try:
                response = await session.get(
                    self.base_url,
                    params={**params, "api_key": self._config.api_key},
                )
            except httpx.TimeoutException as e:
                raise ProviderError(f"SerpAPI request timed out: {e}", provider=self.name) from e
            except httpx.TransportError as e:
                raise ProviderError(f"SerpAPI transport error: {e}", provider=self.name) from e

        if response.status_code == 429:
            self._rate_limiter.report_429(endpoint)
            raise ProviderError("SerpAPI rate limited", provider=self.name, status=429)

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(
                "SerpAPI request failed",
                endpoint=endpoint,
                status=response.status_code,
                error=message,
            )
            raise ProviderError(
                f"SerpAPI request failed: {response.status_code} {message}",
                provider=self.name,
                status=response.status_code,
                retryable=response.status_code >= 500,
            )

        self._rate_limiter.report_success(endpoint)
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("SerpAPI returned invalid JSON", provider=self.name, retryable=False) from e

        if not isinstance(data, dict):
            raise ProviderError("SerpAPI returned an unexpected payload", provider=self.name, retryable=False)
        return data


def _bool_param(value: bool) -> str:
    return "true" if value else "false"


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return "Unknown error"
