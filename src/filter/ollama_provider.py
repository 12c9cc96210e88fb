"""
Ollama LLM provider.

Talks to a local or proxied Ollama server over aiohttp (/api/chat for
completions, /api/tags for health).
"""

import time
from typing import Any

import aiohttp

from src.filter.provider import (
    BaseLLMProvider,
    ChatMessage,
    LLMHealthState,
    LLMHealthStatus,
    LLMOptions,
    LLMResponse,
    LLMResponseStatus,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)

HEALTH_CACHE_SECONDS = 30.0


def _usage_from(data: dict[str, Any]) -> dict[str, int]:
    usage: dict[str, int] = {}
    if "prompt_eval_count" in data:
        usage["prompt_tokens"] = data["prompt_eval_count"]
    if "eval_count" in data:
        usage["completion_tokens"] = data["eval_count"]
    if usage:
        usage["total_tokens"] = usage.get("prompt_tokens", 0) + usage.get("completion_tokens", 0)
    return usage


class OllamaProvider(BaseLLMProvider):
    """
    Ollama LLM provider.

    Example:
        provider = OllamaProvider(host="http://localhost:11434", model="qwen2.5:7b")
        response = await provider.chat([ChatMessage(role="user", content="Hi")])
        await provider.close()
    """

    DEFAULT_MODEL = "qwen2.5:7b"

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str | None = None,
        *,
        name: str = "ollama",
        timeout: float = 120.0,
        cost_per_1k_tokens: float = 0.0,
        max_parallel: int = 1,
        default_temperature: float = 0.2,
        default_max_tokens: int = 2000,
    ):
        """
        Args:
            host: Ollama API host URL.
            model: Model name for all tasks.
            name: Registry name of this provider.
            timeout: Default request timeout in seconds.
        """
        super().__init__(
            name,
            model=model or self.DEFAULT_MODEL,
            cost_per_1k_tokens=cost_per_1k_tokens,
            max_parallel=max_parallel,
            default_temperature=default_temperature,
            default_max_tokens=default_max_tokens,
        )
        self._host = host.rstrip("/")
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None
        self._health: LLMHealthStatus | None = None
        self._health_checked_at = 0.0

        # Metrics tracking
        self._request_count = 0
        self._error_count = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
        return self._session

    async def chat(
        self,
        messages: list[ChatMessage],
        options: LLMOptions | None = None,
    ) -> LLMResponse:
        """
        Generate chat completion.

        Args:
            messages: List of chat messages.
            options: Generation options.

        Returns:
            LLMResponse with assistant response or error.
        """
        self._check_closed()

        session = await self._get_session()
        model = self._get_model(options)
        url = f"{self._host}/api/chat"

        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "stream": False,
            "options": {
                "temperature": self._get_temperature(options),
                "num_predict": self._get_max_tokens(options),
            },
        }
        if options and options.response_format == "json":
            payload["format"] = "json"

        timeout = aiohttp.ClientTimeout(total=options.timeout if options and options.timeout else self._timeout)
        start_time = time.perf_counter()
        self._request_count += 1

        try:
            async with session.post(url, json=payload, timeout=timeout) as response:
                elapsed_ms = (time.perf_counter() - start_time) * 1000

                if response.status != 200:
                    self._error_count += 1
                    error_text = await response.text()
                    logger.error("Ollama chat error", status=response.status, error=error_text[:200])
                    status = (
                        LLMResponseStatus.RATE_LIMITED if response.status == 429 else LLMResponseStatus.ERROR
                    )
                    return LLMResponse.make_error(
                        error=f"Ollama error {response.status}: {error_text[:200]}",
                        model=model,
                        provider=self._name,
                        status=status,
                        elapsed_ms=elapsed_ms,
                    )

                data = await response.json()
                return LLMResponse.success(
                    text=data.get("message", {}).get("content", ""),
                    model=model,
                    provider=self._name,
                    elapsed_ms=elapsed_ms,
                    usage=_usage_from(data),
                )

        except TimeoutError:
            self._error_count += 1
            logger.error("Ollama chat timed out", timeout=timeout.total)
            return LLMResponse.make_error(
                error=f"Request timeout after {timeout.total}s",
                model=model,
                provider=self._name,
                status=LLMResponseStatus.TIMEOUT,
            )
        except aiohttp.ClientError as e:
            self._error_count += 1
            logger.error("Ollama chat request failed", error=str(e))
            return LLMResponse.make_error(error=str(e), model=model, provider=self._name)

    async def get_health(self) -> LLMHealthStatus:
        """Check /api/tags and whether the configured model is pulled.

        The result is cached for a short time so routing does not add a
        round trip to every call.
        """
        if self._is_closed:
            return LLMHealthStatus.unhealthy("Provider is closed")
        if self._health is not None and time.monotonic() - self._health_checked_at < HEALTH_CACHE_SECONDS:
            return self._health

        start_time = time.perf_counter()
        try:
            session = await self._get_session()
            async with session.get(f"{self._host}/api/tags", timeout=aiohttp.ClientTimeout(total=5)) as response:
                if response.status != 200:
                    status = LLMHealthStatus.unhealthy(f"HTTP {response.status}")
                else:
                    data = await response.json()
                    models = [m.get("name", "") for m in data.get("models", [])]
                    latency_ms = (time.perf_counter() - start_time) * 1000
                    if any(m == self._model or m.split(":")[0] == self._model for m in models):
                        status = LLMHealthStatus.healthy(available_models=models, latency_ms=latency_ms)
                    else:
                        status = LLMHealthStatus.unhealthy(f"Model {self._model} not pulled")
                        status.available_models = models
        except (aiohttp.ClientError, TimeoutError) as e:
            status = LLMHealthStatus.unhealthy(str(e) or type(e).__name__)

        if status.state != LLMHealthState.HEALTHY:
            logger.debug("Ollama health", state=status.state.value, message=status.message)
        self._health = status
        self._health_checked_at = time.monotonic()
        return status

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        await super().close()
