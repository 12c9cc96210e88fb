"""
Base class for HTTP search provider clients.
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from src.utils.logging import get_logger
from src.utils.provider_registry import ProviderLimits

logger = get_logger(__name__)


class BaseSearchClient(ABC):
    """Shared httpx session handling for search provider clients.

    Subclasses implement the capability surface used by ProviderRegistry:
    execute(), get_limits(), get_cost_estimate() and is_healthy().
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize client.

        Args:
            name: Provider name (unique within a registry).
            base_url: Endpoint URL.
            timeout: Request timeout in seconds.
            headers: Extra HTTP headers.
            transport: Optional httpx transport (tests pass httpx.MockTransport).
        """
        self._name = name
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport
        self._session: httpx.AsyncClient | None = None
        self._is_closed = False

        default_headers = {"User-Agent": "priorart/0.1 (prior-art search pipeline)"}
        if headers:
            default_headers.update(headers)
        self.default_headers = default_headers

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    async def _get_session(self) -> httpx.AsyncClient:
        """Get HTTP session (lazy initialization)."""
        if self._session is None:
            self._session = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.default_headers,
                transport=self._transport,
            )
        return self._session

    @abstractmethod
    async def execute(self, request: Any) -> Any:
        """Perform one provider request."""

    @abstractmethod
    def get_limits(self) -> ProviderLimits:
        """Advertised request budget."""

    @abstractmethod
    def get_cost_estimate(self, request: Any) -> float:
        """Provider-side cost of one request."""

    @abstractmethod
    async def is_healthy(self) -> bool:
        """Cheap availability check."""

    async def close(self) -> None:
        """Close the session."""
        if self._session:
            await self._session.aclose()
            self._session = None
        self._is_closed = True
        logger.debug("Search client closed", client=self._name)
