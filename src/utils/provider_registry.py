"""
Capability-based provider registry with priority failover.

Search providers and LLM backends expose the same small capability surface
(execute / get_limits / get_cost_estimate / is_healthy). The registry holds
them with an explicit priority and routes each request to the first healthy
provider, falling back to the next one on failure.

Registries are constructed by the composition root (src/main.py) and
injected; there is no module-level instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from src.utils.logging import get_logger

logger = get_logger(__name__)


# ============================================================================
# Capability Interface
# ============================================================================


@dataclass(frozen=True)
class ProviderLimits:
    """Request budget advertised by a provider.

    Attributes:
        min_interval_seconds: Minimum spacing between calls.
        max_parallel: Maximum concurrent calls.
        max_results: Largest page size accepted (None = unbounded).
    """

    min_interval_seconds: float = 0.0
    max_parallel: int = 1
    max_results: int | None = None


@runtime_checkable
class CapabilityProvider(Protocol):
    """Structural interface shared by search and LLM providers."""

    @property
    def name(self) -> str:
        """Unique provider name."""
        ...

    async def execute(self, request: Any) -> Any:
        """Perform one request. Raises on failure."""
        ...

    def get_limits(self) -> ProviderLimits:
        """Return the provider's request budget."""
        ...

    def get_cost_estimate(self, request: Any) -> float:
        """Estimate provider-side cost of one request."""
        ...

    async def is_healthy(self) -> bool:
        """Cheap availability check performed before routing."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


# ============================================================================
# Routing Results
# ============================================================================


@dataclass
class RoutedResult:
    """Outcome of a routed call.

    Attributes:
        value: Whatever the provider returned.
        provider: Name of the provider that served the request.
        cost_estimate: Provider's own estimate for the request.
        attempted: Providers tried in order (including the successful one).
    """

    value: Any
    provider: str
    cost_estimate: float = 0.0
    attempted: list[str] = field(default_factory=list)


class AllProvidersFailedError(Exception):
    """Raised when no registered provider served a request.

    ``retryable`` is True when at least one underlying failure was transient
    (or when every provider was merely unhealthy), so retry policies can
    decide whether the whole route is worth another attempt.
    """

    def __init__(self, kind: str, errors: dict[str, Exception], *, skipped: list[str] | None = None):
        self.kind = kind
        self.errors = errors
        self.skipped = skipped or []
        if errors:
            detail = "; ".join(f"{name}: {err}" for name, err in errors.items())
            message = f"All {kind} providers failed: {detail}"
        else:
            message = f"No healthy {kind} provider available"
        super().__init__(message)

        if errors:
            self.retryable = any(getattr(err, "retryable", True) is not False for err in errors.values())
            last = list(errors.values())[-1]
            self.status: int | None = getattr(last, "status", None)
        else:
            self.retryable = True
            self.status = None


# ============================================================================
# Registry
# ============================================================================


class ProviderRegistry:
    """Priority-ordered registry of capability providers.

    Example:
        registry = ProviderRegistry("search")
        registry.register(serpapi_client, priority=1)
        routed = await registry.execute(SearchRequest(...))
    """

    def __init__(self, kind: str):
        """
        Args:
            kind: Label used in logs and errors ("search", "llm").
        """
        self.kind = kind
        self._providers: dict[str, CapabilityProvider] = {}
        self._priorities: dict[str, int] = {}

    def register(self, provider: CapabilityProvider, priority: int = 100) -> None:
        """Register a provider.

        Args:
            provider: Provider instance.
            priority: Lower values are tried first.

        Raises:
            ValueError: If a provider with the same name is already registered.
        """
        name = provider.name
        if name in self._providers:
            raise ValueError(f"Provider '{name}' already registered")

        self._providers[name] = provider
        self._priorities[name] = priority
        logger.info("Provider registered", kind=self.kind, provider=name, priority=priority)

    def unregister(self, name: str) -> CapabilityProvider | None:
        """Remove a provider by name."""
        provider = self._providers.pop(name, None)
        self._priorities.pop(name, None)
        if provider is not None:
            logger.info("Provider unregistered", kind=self.kind, provider=name)
        return provider

    def get(self, name: str) -> CapabilityProvider | None:
        return self._providers.get(name)

    def list_providers(self) -> list[str]:
        """Provider names in routing order (priority, then name)."""
        return sorted(self._providers, key=lambda n: (self._priorities[n], n))

    def __len__(self) -> int:
        return len(self._providers)

    async def _is_healthy(self, name: str, provider: CapabilityProvider) -> bool:
        try:
            return bool(await provider.is_healthy())
        except Exception as e:
            logger.warning("Health check failed", kind=self.kind, provider=name, error=str(e))
            return False

    async def healthy_providers(self) -> list[str]:
        """Names of providers currently reporting healthy, in routing order."""
        return [name for name in self.list_providers() if await self._is_healthy(name, self._providers[name])]

    async def execute(self, request: Any) -> RoutedResult:
        """Route a request to the first healthy provider, with failover.

        Providers are tried by ascending priority (name breaks ties).
        Unhealthy providers are skipped; a provider that raises is recorded
        and the next one is tried.

        Raises:
            AllProvidersFailedError: If nothing served the request.
        """
        errors: dict[str, Exception] = {}
        skipped: list[str] = []
        attempted: list[str] = []

        for name in self.list_providers():
            provider = self._providers[name]

            if not await self._is_healthy(name, provider):
                logger.debug("Skipping unhealthy provider", kind=self.kind, provider=name)
                skipped.append(name)
                continue

            attempted.append(name)
            try:
                value = await provider.execute(request)
            except Exception as e:
                errors[name] = e
                logger.warning(
                    "Provider failed, trying next",
                    kind=self.kind,
                    provider=name,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue

            return RoutedResult(
                value=value,
                provider=name,
                cost_estimate=provider.get_cost_estimate(request),
                attempted=attempted,
            )

        raise AllProvidersFailedError(self.kind, errors, skipped=skipped)

    async def close_all(self) -> None:
        """Close every registered provider."""
        for name, provider in self._providers.items():
            try:
                await provider.close()
            except Exception as e:
                logger.error("Failed to close provider", kind=self.kind, provider=name, error=str(e))
