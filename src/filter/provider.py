"""
LLM provider abstraction layer.

Every backend (Ollama, OpenAI-compatible gateways) implements chat() and
get_health(); BaseLLMProvider turns that into the capability surface used by
ProviderRegistry (execute / get_limits / get_cost_estimate / is_healthy), so
novelty assessment routes LLM calls by priority with failover exactly like
search calls.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from src.utils.errors import LLMError
from src.utils.logging import get_logger
from src.utils.provider_registry import ProviderLimits

logger = get_logger(__name__)

# Rough chars-per-token ratio used for cost estimates
CHARS_PER_TOKEN = 4


# ============================================================================
# Data Classes for LLM Operations
# ============================================================================


class LLMResponseStatus(str, Enum):
    """Response status."""

    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"


@dataclass
class LLMOptions:
    """
    Options for LLM generation requests.

    Attributes:
        model: Model name to use (provider default when None).
        temperature: Generation temperature (0.0-2.0).
        max_tokens: Maximum tokens to generate.
        response_format: "json" to request a JSON object when supported.
        timeout: Request timeout in seconds.
    """

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    response_format: str | None = None
    timeout: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        return {
            k: v
            for k, v in {
                "model": self.model,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
                "response_format": self.response_format,
                "timeout": self.timeout,
            }.items()
            if v is not None
        }


@dataclass
class ChatMessage:
    """A single message in a chat conversation."""

    role: str
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class LLMRequest:
    """Routed chat request.

    Attributes:
        messages: Conversation to complete.
        options: Generation options.
        purpose: Short label for logs ("novelty_stage1", ...).
    """

    messages: list[ChatMessage]
    options: LLMOptions = field(default_factory=LLMOptions)
    purpose: str = ""

    @property
    def prompt_chars(self) -> int:
        return sum(len(m.content) for m in self.messages)


@dataclass
class LLMResponse:
    """
    Response from an LLM provider.

    Attributes:
        text: Generated text.
        status: Response status.
        model: Model that generated the response.
        provider: Provider name.
        usage: Token usage statistics.
        elapsed_ms: Time taken for generation in milliseconds.
        error_message: Error message if generation failed.
    """

    text: str
    status: LLMResponseStatus
    model: str
    provider: str
    usage: dict[str, int] = field(default_factory=dict)
    elapsed_ms: float = 0.0
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        """Check if generation was successful."""
        return self.status == LLMResponseStatus.SUCCESS

    @property
    def prompt_tokens(self) -> int | None:
        return self.usage.get("prompt_tokens")

    @property
    def completion_tokens(self) -> int | None:
        return self.usage.get("completion_tokens")

    @classmethod
    def success(
        cls,
        text: str,
        model: str,
        provider: str,
        elapsed_ms: float = 0.0,
        usage: dict[str, int] | None = None,
    ) -> "LLMResponse":
        """Create a successful response."""
        return cls(
            text=text,
            status=LLMResponseStatus.SUCCESS,
            model=model,
            provider=provider,
            usage=usage or {},
            elapsed_ms=elapsed_ms,
        )

    @classmethod
    def make_error(
        cls,
        error: str,
        model: str,
        provider: str,
        status: LLMResponseStatus = LLMResponseStatus.ERROR,
        elapsed_ms: float = 0.0,
    ) -> "LLMResponse":
        """Create an error response."""
        return cls(
            text="",
            status=status,
            model=model,
            provider=provider,
            error_message=error,
            elapsed_ms=elapsed_ms,
        )


class LLMHealthState(str, Enum):
    """Provider health states."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class LLMHealthStatus:
    """Health status of an LLM provider."""

    state: LLMHealthState
    available_models: list[str] = field(default_factory=list)
    latency_ms: float = 0.0
    last_check: datetime | None = None
    message: str | None = None

    @classmethod
    def healthy(cls, available_models: list[str] | None = None, latency_ms: float = 0.0) -> "LLMHealthStatus":
        return cls(
            state=LLMHealthState.HEALTHY,
            available_models=available_models or [],
            latency_ms=latency_ms,
            last_check=datetime.now(UTC),
        )

    @classmethod
    def unhealthy(cls, message: str | None = None) -> "LLMHealthStatus":
        return cls(state=LLMHealthState.UNHEALTHY, message=message, last_check=datetime.now(UTC))


# ============================================================================
# Base Provider
# ============================================================================


class BaseLLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    Subclasses implement chat() and get_health(); execute() raises LLMError
    on any unsuccessful response so the registry can fail over.
    """

    def __init__(
        self,
        provider_name: str,
        *,
        model: str,
        cost_per_1k_tokens: float = 0.0,
        max_parallel: int = 1,
        default_temperature: float = 0.2,
        default_max_tokens: int = 2000,
    ):
        """
        Args:
            provider_name: Unique name for this provider.
            model: Default model.
            cost_per_1k_tokens: Price used for cost estimates.
            max_parallel: Concurrent requests the backend tolerates.
            default_temperature: Used when options leave it unset.
            default_max_tokens: Used when options leave it unset.
        """
        self._name = provider_name
        self._model = model
        self._cost_per_1k = cost_per_1k_tokens
        self._max_parallel = max_parallel
        self._default_temperature = default_temperature
        self._default_max_tokens = default_max_tokens
        self._is_closed = False

    @property
    def name(self) -> str:
        """Unique name of the provider."""
        return self._name

    @property
    def model(self) -> str:
        return self._model

    @property
    def is_closed(self) -> bool:
        """Check if provider is closed."""
        return self._is_closed

    def _get_model(self, options: LLMOptions | None) -> str:
        if options and options.model:
            return options.model
        return self._model

    def _get_temperature(self, options: LLMOptions | None) -> float:
        if options and options.temperature is not None:
            return options.temperature
        return self._default_temperature

    def _get_max_tokens(self, options: LLMOptions | None) -> int:
        if options and options.max_tokens:
            return options.max_tokens
        return self._default_max_tokens

    @abstractmethod
    async def chat(
        self,
        messages: list[ChatMessage],
        options: LLMOptions | None = None,
    ) -> LLMResponse:
        """Generate chat completion. Never raises for backend failures."""
        pass

    @abstractmethod
    async def get_health(self) -> LLMHealthStatus:
        """Get current health status."""
        pass

    # =========================================================================
    # Capability surface
    # =========================================================================

    async def execute(self, request: LLMRequest) -> LLMResponse:
        """Run a routed request.

        Raises:
            LLMError: If the backend returned an unsuccessful response.
        """
        self._check_closed()
        response = await self.chat(request.messages, request.options)
        if not response.ok:
            raise LLMError(
                f"{self._name}: {response.error_message or response.status.value}",
                stage=request.purpose or None,
                retryable=response.status in (LLMResponseStatus.TIMEOUT, LLMResponseStatus.RATE_LIMITED),
            )
        return response

    def get_limits(self) -> ProviderLimits:
        return ProviderLimits(max_parallel=self._max_parallel)

    def get_cost_estimate(self, request: LLMRequest) -> float:
        tokens = request.prompt_chars / CHARS_PER_TOKEN + self._get_max_tokens(request.options)
        return round(tokens / 1000 * self._cost_per_1k, 6)

    async def is_healthy(self) -> bool:
        if self._is_closed:
            return False
        status = await self.get_health()
        return status.state != LLMHealthState.UNHEALTHY

    async def close(self) -> None:
        """Close and cleanup provider resources."""
        self._is_closed = True
        logger.debug("LLM provider closed", provider=self._name)

    def _check_closed(self) -> None:
        """Raise error if provider is closed."""
        if self._is_closed:
            raise LLMError(f"Provider '{self._name}' is closed", retryable=False)
