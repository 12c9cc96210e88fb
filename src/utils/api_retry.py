"""
Retry utilities for external HTTP APIs (search provider, LLM gateways).

Retries transient failures (network errors, 429, 5xx) with exponential
backoff. Client errors (400/401/403/404/410) are never retried; the same
parameters would fail again.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from src.utils.backoff import BackoffConfig, calculate_backoff
from src.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class APIRetryError(Exception):
    """Raised when all retry attempts are exhausted.

    Attributes:
        message: Error description
        attempts: Number of attempts made
        last_error: The last exception that caused failure
        last_status: The last HTTP status code (if applicable)
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: Exception | None = None,
        last_status: int | None = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
        self.last_status = last_status


class HTTPStatusError(Exception):
    """Raised when HTTP response has an error status code.

    Attributes:
        status: HTTP status code
        message: Error description
    """

    def __init__(self, status: int, message: str = ""):
        super().__init__(message or f"HTTP {status}")
        self.status = status


@dataclass
class APIRetryPolicy:
    """Retry policy for external APIs.

    Attributes:
        max_retries: Maximum retry attempts after the first call
        backoff: Backoff configuration for delay calculation
        retryable_exceptions: Exception types that are safe to retry
        retryable_status_codes: HTTP status codes that are safe to retry
        non_retryable_status_codes: HTTP status codes that should never be retried

    Exceptions carrying a boolean ``retryable`` attribute (ProviderError,
    LLMError) decide for themselves.

    Example:
        >>> policy = APIRetryPolicy(max_retries=2)
        >>> policy.should_retry_status(429)
        True
        >>> policy.should_retry_status(404)
        False
    """

    max_retries: int = 2
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    retryable_exceptions: tuple[type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        OSError,
    )

    # 429: rate limited; 5xx: transient server side failures
    retryable_status_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({429, 500, 502, 503, 504})
    )

    non_retryable_status_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({400, 401, 403, 404, 410})
    )

    def __post_init__(self) -> None:
        """Validate policy configuration."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")

        overlap = self.retryable_status_codes & self.non_retryable_status_codes
        if overlap:
            raise ValueError(
                f"Status codes cannot be both retryable and non-retryable: {overlap}"
            )

    def should_retry_exception(self, exc: Exception) -> bool:
        """Check if exception is retryable."""
        retryable = getattr(exc, "retryable", None)
        if isinstance(retryable, bool):
            return retryable
        return isinstance(exc, self.retryable_exceptions)

    def should_retry_status(self, status: int) -> bool:
        """Check if HTTP status code is retryable."""
        if status in self.non_retryable_status_codes:
            return False
        return status in self.retryable_status_codes


async def retry_api_call(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: APIRetryPolicy | None = None,
    operation_name: str | None = None,
    **kwargs: Any,
) -> T:
    """Execute async function with retry logic.

    The same positional and keyword arguments are passed on every attempt.

    Args:
        func: Async function to call
        *args: Positional arguments for func
        policy: Retry policy (default: APIRetryPolicy())
        operation_name: Name for logging (default: func.__name__)
        **kwargs: Keyword arguments for func

    Returns:
        Result from func

    Raises:
        APIRetryError: When all retries exhausted
        Exception: When a non-retryable error occurs
    """
    if policy is None:
        policy = APIRetryPolicy()

    op_name = operation_name or getattr(func, "__name__", "api_call")
    last_error: Exception | None = None
    last_status: int | None = None

    for attempt in range(policy.max_retries + 1):
        try:
            return await func(*args, **kwargs)

        except HTTPStatusError as e:
            last_error = e
            last_status = e.status

            if not policy.should_retry_status(e.status):
                logger.warning(
                    "Non-retryable HTTP status",
                    operation=op_name,
                    status=e.status,
                    attempt=attempt + 1,
                )
                raise

            if attempt >= policy.max_retries:
                break

            delay = calculate_backoff(attempt, policy.backoff)
            logger.info(
                "Retrying after HTTP error",
                operation=op_name,
                status=e.status,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay_seconds=round(delay, 2),
            )
            await asyncio.sleep(delay)

        except Exception as e:
            last_error = e
            last_status = getattr(e, "status", None)

            if not policy.should_retry_exception(e):
                logger.warning(
                    "Non-retryable exception",
                    operation=op_name,
                    error_type=type(e).__name__,
                    error=str(e),
                    attempt=attempt + 1,
                )
                raise

            if attempt >= policy.max_retries:
                break

            delay = calculate_backoff(attempt, policy.backoff)
            logger.info(
                "Retrying after exception",
                operation=op_name,
                error_type=type(e).__name__,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay_seconds=round(delay, 2),
            )
            await asyncio.sleep(delay)

    raise APIRetryError(
        f"{op_name} failed after {policy.max_retries + 1} attempts",
        attempts=policy.max_retries + 1,
        last_error=last_error,
        last_status=last_status,
    )


def with_api_retry(
    policy: APIRetryPolicy | None = None,
    operation_name: str | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator for adding retry logic to async API functions.

    Example:
        >>> @with_api_retry(APIRetryPolicy(max_retries=3))
        ... async def fetch_models() -> dict:
        ...     response = await client.get("/models")
        ...     if response.status_code >= 400:
        ...         raise HTTPStatusError(response.status_code)
        ...     return response.json()
    """

    def decorator(
        func: Callable[..., Awaitable[T]],
    ) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_api_call(
                func,
                *args,
                policy=policy,
                operation_name=operation_name or func.__name__,
                **kwargs,
            )

        return wrapper

    return decorator
