"""
LLM provider wiring and routed chat calls.

Builds the "llm" ProviderRegistry from settings and offers a small call
helper that returns both the response and which provider served it.
"""

import os
from dataclasses import dataclass

from src.filter.ollama_provider import OllamaProvider
from src.filter.openai_provider import OpenAICompatibleProvider
from src.filter.provider import BaseLLMProvider, ChatMessage, LLMOptions, LLMRequest, LLMResponse
from src.utils.config import LLMConfig, LLMProviderConfig
from src.utils.errors import LLMError
from src.utils.logging import get_logger
from src.utils.provider_registry import AllProvidersFailedError, ProviderRegistry

logger = get_logger(__name__)


def _resolve_api_key(cfg: LLMProviderConfig) -> str | None:
    if cfg.api_key:
        return cfg.api_key
    if cfg.api_key_env:
        return os.environ.get(cfg.api_key_env) or None
    return None


def create_provider(cfg: LLMProviderConfig, llm: LLMConfig) -> BaseLLMProvider:
    """Instantiate one provider from its config entry.

    Raises:
        ValueError: For an unknown provider kind.
    """
    common = {
        "name": cfg.name,
        "timeout": llm.timeout_seconds,
        "cost_per_1k_tokens": cfg.cost_per_1k_tokens,
        "max_parallel": cfg.max_parallel,
        "default_temperature": llm.temperature,
        "default_max_tokens": llm.max_tokens,
    }
    if cfg.kind == "ollama":
        return OllamaProvider(host=cfg.base_url, model=cfg.model, **common)
    if cfg.kind == "openai":
        return OpenAICompatibleProvider(cfg.base_url, cfg.model, api_key=_resolve_api_key(cfg), **common)
    raise ValueError(f"Unknown LLM provider kind: {cfg.kind}")


def build_llm_registry(llm: LLMConfig) -> ProviderRegistry:
    """Registry of every enabled provider, ordered by configured priority."""
    registry = ProviderRegistry("llm")
    for cfg in llm.providers:
        if not cfg.enabled:
            logger.debug("LLM provider disabled", provider=cfg.name)
            continue
        registry.register(create_provider(cfg, llm), priority=cfg.priority)
    return registry


@dataclass
class LLMCallResult:
    response: LLMResponse
    provider: str
    attempted: list[str]


async def call_llm(
    registry: ProviderRegistry,
    messages: list[ChatMessage],
    options: LLMOptions | None = None,
    *,
    purpose: str = "",
) -> LLMCallResult:
    """Route one chat request through the registry.

    Raises:
        LLMError: If no provider produced a successful response.
    """
    request = LLMRequest(messages=messages, options=options or LLMOptions(), purpose=purpose)
    try:
        routed = await registry.execute(request)
    except AllProvidersFailedError as e:
        raise LLMError(str(e), stage=purpose or None, retryable=e.retryable) from e

    logger.debug("LLM call served", purpose=purpose, provider=routed.provider, attempted=routed.attempted)
    return LLMCallResult(response=routed.value, provider=routed.provider, attempted=routed.attempted)
