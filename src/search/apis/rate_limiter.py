"""
Per-endpoint rate limiter for the external search provider.

Each endpoint key (google_patents, google_scholar, google_patents_details)
gets its own spacing and concurrency budget:
- min_interval: minimum seconds between two request starts
- max_parallel: maximum requests in flight

On 429 the effective parallelism is reduced (floor 1) and restored one step
at a time after a stable period without further 429s.

The limiter is created by the composition root and shared by search and
detail calls through injection.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class EndpointLimit:
    """Rate limit configuration for a single endpoint."""

    min_interval_seconds: float = 1.0
    max_parallel: int = 1


@dataclass
class BackoffState:
    """Tracks 429 backoff for an endpoint."""

    effective_max_parallel: int = 1
    config_max_parallel: int = 1
    last_429_time: float = 0.0
    last_recovery_attempt: float = 0.0
    backoff_active: bool = False
    consecutive_429_count: int = 0


class ProviderRateLimiter:
    """Spacing and concurrency limiter keyed by endpoint.

    Example:
        limiter = ProviderRateLimiter(default=EndpointLimit(5.0, 3))
        async with limiter.slot("google_patents"):
            response = await client.get(...)
    """

    def __init__(
        self,
        default: EndpointLimit | None = None,
        limits: dict[str, EndpointLimit] | None = None,
        *,
        decrease_step: int = 1,
        recovery_stable_seconds: float = 60.0,
    ) -> None:
        self._default = default or EndpointLimit()
        self._configs: dict[str, EndpointLimit] = dict(limits or {})
        self._decrease_step = decrease_step
        self._recovery_stable_seconds = recovery_stable_seconds

        self._qps_locks: dict[str, asyncio.Lock] = {}
        self._last_request: dict[str, float] = {}
        self._active_counts: dict[str, int] = {}
        self._slot_events: dict[str, asyncio.Event] = {}
        self._backoff_states: dict[str, BackoffState] = {}

    def configure(self, key: str, limit: EndpointLimit) -> None:
        """Set the limit for an endpoint before first use."""
        self._configs[key] = limit

    def get_config(self, key: str) -> EndpointLimit:
        return self._configs.get(key, self._default)

    def _ensure_initialized(self, key: str) -> None:
        # Single event loop: no await between check and set
        if key in self._qps_locks:
            return

        config = self.get_config(key)
        self._qps_locks[key] = asyncio.Lock()
        self._active_counts[key] = 0
        event = asyncio.Event()
        event.set()
        self._slot_events[key] = event
        self._backoff_states[key] = BackoffState(
            effective_max_parallel=config.max_parallel,
            config_max_parallel=config.max_parallel,
        )
        logger.debug(
            "Initialized rate limiter for endpoint",
            endpoint=key,
            min_interval=config.min_interval_seconds,
            max_parallel=config.max_parallel,
        )

    async def acquire(self, key: str, timeout: float = 120.0) -> None:
        """Acquire a slot for an endpoint.

        Blocks until a concurrency slot is free and the minimum interval since
        the previous request start has elapsed.

        Raises:
            TimeoutError: If no slot was available within ``timeout`` seconds.
        """
        self._ensure_initialized(key)
        self._maybe_recover(key)

        start = time.monotonic()
        while True:
            backoff = self._backoff_states[key]
            if self._active_counts[key] < backoff.effective_max_parallel:
                self._active_counts[key] += 1
                break

            elapsed = time.monotonic() - start
            if elapsed >= timeout:
                raise TimeoutError(
                    f"Failed to acquire rate limit slot within {timeout}s "
                    f"(endpoint={key}, effective_max_parallel={backoff.effective_max_parallel})"
                )

            event = self._slot_events[key]
            event.clear()
            try:
                await asyncio.wait_for(event.wait(), timeout=min(0.1, timeout - elapsed))
            except TimeoutError:
                pass

        config = self.get_config(key)
        try:
            async with self._qps_locks[key]:
                last = self._last_request.get(key)
                if last is not None:
                    wait_time = config.min_interval_seconds - (time.monotonic() - last)
                    if wait_time > 0:
                        logger.debug("Rate limiting: waiting", endpoint=key, wait_seconds=round(wait_time, 3))
                        await asyncio.sleep(wait_time)
                self._last_request[key] = time.monotonic()
        except BaseException:
            # Cancelled while spacing: give the concurrency slot back
            self.release(key)
            raise

    def release(self, key: str) -> None:
        """Release a slot. Call once per successful acquire()."""
        if key not in self._slot_events:
            return

        if self._active_counts.get(key, 0) > 0:
            self._active_counts[key] -= 1

        self._slot_events[key].set()

    @asynccontextmanager
    async def slot(self, key: str, timeout: float = 120.0) -> AsyncIterator[None]:
        """acquire() / release() as an async context manager."""
        await self.acquire(key, timeout=timeout)
        try:
            yield
        finally:
            self.release(key)

    def report_429(self, key: str) -> None:
        """Reduce effective parallelism after a 429 response."""
        backoff = self._backoff_states.get(key)
        if backoff is None:
            return

        backoff.consecutive_429_count += 1
        backoff.last_429_time = time.monotonic()
        new_max = max(1, backoff.effective_max_parallel - self._decrease_step)

        if new_max < backoff.effective_max_parallel:
            backoff.effective_max_parallel = new_max
            backoff.backoff_active = True
            logger.warning(
                "Backoff triggered: reducing effective_max_parallel",
                endpoint=key,
                new_effective_max=new_max,
                config_max=backoff.config_max_parallel,
                consecutive_429_count=backoff.consecutive_429_count,
            )

    def report_success(self, key: str) -> None:
        backoff = self._backoff_states.get(key)
        if backoff is not None:
            backoff.consecutive_429_count = 0

    def _maybe_recover(self, key: str) -> None:
        backoff = self._backoff_states[key]
        if not backoff.backoff_active:
            return

        now = time.monotonic()
        if (
            now - backoff.last_429_time < self._recovery_stable_seconds
            or now - backoff.last_recovery_attempt < self._recovery_stable_seconds
        ):
            return

        backoff.last_recovery_attempt = now
        if backoff.effective_max_parallel < backoff.config_max_parallel:
            backoff.effective_max_parallel += 1
            self._slot_events[key].set()
            logger.info(
                "Backoff recovery: increasing effective_max_parallel",
                endpoint=key,
                new_effective_max=backoff.effective_max_parallel,
            )

        if backoff.effective_max_parallel >= backoff.config_max_parallel:
            backoff.backoff_active = False

    def get_stats(self, key: str) -> dict[str, float | int | bool]:
        """Snapshot of limiter state for an endpoint."""
        config = self.get_config(key)
        backoff = self._backoff_states.get(key)
        return {
            "min_interval_seconds": config.min_interval_seconds,
            "max_parallel": config.max_parallel,
            "active_count": self._active_counts.get(key, 0),
            "effective_max_parallel": backoff.effective_max_parallel if backoff else config.max_parallel,
            "backoff_active": backoff.backoff_active if backoff else False,
            "consecutive_429_count": backoff.consecutive_429_count if backoff else 0,
        }
