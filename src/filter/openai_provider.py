"""
OpenAI-compatible chat completions provider.

Works against api.openai.com and any gateway exposing /chat/completions
(vLLM, LiteLLM, llama.cpp server). Transient HTTP failures are retried with
backoff before the response is reported as an error.
"""

import time
from typing import Any
from urllib.parse import urlsplit

import httpx

from src.filter.provider import (
    BaseLLMProvider,
    ChatMessage,
    LLMHealthStatus,
    LLMOptions,
    LLMResponse,
    LLMResponseStatus,
)
from src.utils.api_retry import APIRetryError, APIRetryPolicy, HTTPStatusError, with_api_retry
from src.utils.logging import get_logger

logger = get_logger(__name__)

CHAT_RETRY_POLICY = APIRetryPolicy(max_retries=2)
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class OpenAICompatibleProvider(BaseLLMProvider):
    """
    Chat completions over httpx.

    Example:
        provider = OpenAICompatibleProvider(
            base_url="https://api.openai.com/v1", model="gpt-4o-mini", api_key=key
        )
        response = await provider.chat([ChatMessage(role="user", content="Hi")])
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        api_key: str | None = None,
        name: str = "openai",
        timeout: float = 120.0,
        cost_per_1k_tokens: float = 0.0,
        max_parallel: int = 2,
        default_temperature: float = 0.2,
        default_max_tokens: int = 2000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            name,
            model=model,
            cost_per_1k_tokens=cost_per_1k_tokens,
            max_parallel=max_parallel,
            default_temperature=default_temperature,
            default_max_tokens=default_max_tokens,
        )
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def requires_api_key(self) -> bool:
        return urlsplit(self._base_url).hostname not in LOCAL_HOSTS

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    @with_api_retry(CHAT_RETRY_POLICY, operation_name="chat_completions")
    async def _post_completion(self, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
        try:
            response = await self._get_client().post("/chat/completions", json=payload, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Request timeout after {timeout}s") from e
        except httpx.TransportError as e:
            raise ConnectionError(str(e) or type(e).__name__) from e

        if response.status_code >= 400:
            raise HTTPStatusError(response.status_code, response.text[:200])
        return response.json()

    async def chat(
        self,
        messages: list[ChatMessage],
        options: LLMOptions | None = None,
    ) -> LLMResponse:
        self._check_closed()

        model = self._get_model(options)
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "temperature": self._get_temperature(options),
            "max_tokens": self._get_max_tokens(options),
        }
        if options and options.response_format == "json":
            payload["response_format"] = {"type": "json_object"}

        timeout = options.timeout if options and options.timeout else self._timeout
        start_time = time.perf_counter()

        try:
            data = await self._post_completion(payload, timeout)
        except HTTPStatusError as e:
            status = LLMResponseStatus.RATE_LIMITED if e.status == 429 else LLMResponseStatus.ERROR
            logger.error("Chat completion rejected", provider=self._name, status=e.status)
            return LLMResponse.make_error(f"HTTP {e.status}: {e}", model, self._name, status=status)
        except APIRetryError as e:
            status = LLMResponseStatus.TIMEOUT if isinstance(e.last_error, TimeoutError) else LLMResponseStatus.ERROR
            if e.last_status == 429:
                status = LLMResponseStatus.RATE_LIMITED
            logger.error("Chat completion failed after retries", provider=self._name, attempts=e.attempts)
            return LLMResponse.make_error(str(e.last_error or e), model, self._name, status=status)
        except (ValueError, OSError) as e:
            logger.error("Chat completion failed", provider=self._name, error=str(e))
            return LLMResponse.make_error(str(e), model, self._name)

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        choices = data.get("choices") or []
        if not choices:
            return LLMResponse.make_error("Response has no choices", model, self._name, elapsed_ms=elapsed_ms)

        usage_raw = data.get("usage") or {}
        usage = {
            k: int(usage_raw[k])
            for k in ("prompt_tokens", "completion_tokens", "total_tokens")
            if isinstance(usage_raw.get(k), int)
        }
        return LLMResponse.success(
            text=(choices[0].get("message") or {}).get("content") or "",
            model=data.get("model") or model,
            provider=self._name,
            elapsed_ms=elapsed_ms,
            usage=usage,
        )

    async def get_health(self) -> LLMHealthStatus:
        if self._is_closed:
            return LLMHealthStatus.unhealthy("Provider is closed")
        if self.requires_api_key and not self._api_key:
            return LLMHealthStatus.unhealthy("API key not configured")
        return LLMHealthStatus.healthy(available_models=[self._model])

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
        await super().close()
