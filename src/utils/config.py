"""
Configuration management for the prior-art pipeline.
Loads and validates settings from YAML files and environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "PRIORART_"


class GeneralConfig(BaseModel):
    """General configuration."""

    project_name: str = "priorart"
    version: str = "0.1.0"
    log_level: str = "INFO"
    data_dir: str = "data"
    logs_dir: str = "logs"
    # Used to build report URLs handed to callers
    public_base_url: str = "/api/prior-art"


class StorageConfig(BaseModel):
    """Storage configuration."""

    database_path: str = "data/priorart.db"
    reports_dir: str = "data/reports"


class SerpApiConfig(BaseModel):
    """SerpAPI search provider configuration.

    Attributes:
        min_interval_seconds: Minimum spacing between calls to one endpoint.
        max_parallel: Maximum concurrent calls to one endpoint.
        priority: Routing priority (lower is preferred).
        cost_per_call: Provider credits consumed by one request.
    """

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    base_url: str = "https://serpapi.com/search"
    api_key: str | None = None
    timeout_seconds: float = 30.0
    language: str = "en"
    no_cache: bool = False
    min_interval_seconds: float = Field(default=5.0, ge=0.0)
    max_parallel: int = Field(default=3, ge=1)
    priority: int = 1
    cost_per_call: float = 1.0


class SearchConfig(BaseModel):
    """Query execution and aggregation configuration."""

    model_config = ConfigDict(extra="forbid")

    max_parallel_variants: int = Field(default=3, ge=1, le=3)
    max_retries: int = Field(default=2, ge=0, le=5)
    retry_base_delay: float = Field(default=1.0, gt=0.0)
    retry_max_delay: float = Field(default=30.0, gt=0.0)
    shortlist_intersection_cap: int = Field(default=25, ge=1)
    shortlist_fallback_cap: int = Field(default=15, ge=1)
    # Reciprocal rank fusion constant (score = sum 1 / (k + rank))
    rank_fusion_k: int = Field(default=60, ge=0)


class DetailsConfig(BaseModel):
    """Detail fetcher configuration."""

    model_config = ConfigDict(extra="forbid")

    fields: list[str] = Field(
        default_factory=lambda: [
            "title",
            "abstract",
            "claims",
            "classifications",
            "publication_date",
            "priority_date",
            "worldwide_applications",
            "events",
            "patent_citations",
            "non_patent_citations",
            "pdf",
            "description",
        ]
    )
    delay_seconds: float = Field(default=2.0, ge=0.0)
    ttl_days: int = Field(default=14, ge=0)
    fetch_during_run: bool = True


class RunConfig(BaseModel):
    """Search run lifecycle configuration."""

    model_config = ConfigDict(extra="forbid")

    timeout_seconds: float = Field(default=600.0, gt=0.0)
    # Extra time granted to aggregation and persistence after the search deadline
    grace_seconds: float = Field(default=120.0, ge=0.0)
    persist_refused_runs: bool = False


class NoveltyConfig(BaseModel):
    """Novelty assessment configuration."""

    model_config = ConfigDict(extra="forbid")

    intersecting_cap: int = Field(default=25, ge=1)
    fallback_cap: int = Field(default=15, ge=1)
    abstract_word_limit: int = Field(default=200, ge=10)
    claims_char_limit: int = Field(default=4000, ge=100)
    auto_report: bool = True


class LLMProviderConfig(BaseModel):
    """Configuration for a single LLM backend."""

    model_config = ConfigDict(extra="forbid")

    name: str
    kind: str = "openai"  # openai | ollama
    base_url: str
    model: str
    api_key: str | None = None
    api_key_env: str | None = None
    priority: int = 999
    enabled: bool = True
    cost_per_1k_tokens: float = 0.0
    max_parallel: int = Field(default=2, ge=1)


class LLMConfig(BaseModel):
    """LLM configuration."""

    temperature: float = 0.2
    max_tokens: int = 2000
    timeout_seconds: float = 120.0
    providers: list[LLMProviderConfig] = Field(
        default_factory=lambda: [
            LLMProviderConfig(
                name="ollama",
                kind="ollama",
                base_url="http://localhost:11434",
                model="qwen2.5:7b",
                priority=10,
            )
        ]
    )


class Settings(BaseModel):
    """Main settings container."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    serpapi: SerpApiConfig = Field(default_factory=SerpApiConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    details: DetailsConfig = Field(default_factory=DetailsConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    novelty: NoveltyConfig = Field(default_factory=NoveltyConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Override dictionary.

    Returns:
        Merged dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _load_yaml_config(config_dir: Path) -> dict[str, Any]:
    """Load settings.yaml and apply the `settings` section of local.yaml.

    Example local.yaml:
        settings:
          run:
            timeout_seconds: 300

    Args:
        config_dir: Configuration directory path.

    Returns:
        Merged configuration dictionary.
    """
    config = _read_yaml(config_dir / "settings.yaml")
    local_overrides = _read_yaml(config_dir / "local.yaml")
    if "settings" in local_overrides:
        config = _deep_merge(config, local_overrides["settings"])
    return config


def _coerce_env_value(value: str) -> Any:
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with PRIORART_ and use
    double underscores for nested keys.

    Example:
        PRIORART_GENERAL__LOG_LEVEL=DEBUG
        PRIORART_RUN__TIMEOUT_SECONDS=300

    Args:
        config: Configuration dictionary.

    Returns:
        Configuration with environment overrides.
    """
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or "__" not in key:
            continue

        key_path = key[len(ENV_PREFIX) :].lower().split("__")

        current = config
        for part in key_path[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        current[key_path[-1]] = _coerce_env_value(value)

    return config


def load_settings(config_dir: str | Path | None = None) -> Settings:
    """Build settings from YAML files and the environment.

    Settings are loaded from:
    1. Default values
    2. YAML configuration files
    3. Environment variables (highest priority)

    Args:
        config_dir: Configuration directory. Uses PRIORART_CONFIG_DIR if None.

    Returns:
        Settings instance.
    """
    if config_dir is None:
        config_dir = os.environ.get(f"{ENV_PREFIX}CONFIG_DIR", "config")
    config_dir = Path(config_dir)
    if not config_dir.is_absolute() and not config_dir.exists():
        config_dir = get_project_root() / config_dir

    config = _load_yaml_config(config_dir)
    config = _apply_env_overrides(config)

    settings = Settings(**config)

    # Provider credentials commonly arrive through their own variables
    if settings.serpapi.api_key is None:
        settings.serpapi.api_key = os.environ.get("SERPAPI_API_KEY")
    for provider in settings.llm.providers:
        if provider.api_key is None and provider.api_key_env:
            provider.api_key = os.environ.get(provider.api_key_env)

    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings (loaded once per process).

    Returns:
        Settings instance.
    """
    return load_settings()


def get_project_root() -> Path:
    """Get the project root directory.

    Returns:
        Project root path.
    """
    # Assuming this file is at src/utils/config.py
    return Path(__file__).parent.parent.parent


def get_config_dir() -> Path:
    """Resolve the configuration directory (prompts live below it)."""
    config_dir = Path(os.environ.get(f"{ENV_PREFIX}CONFIG_DIR", "config"))
    if not config_dir.is_absolute():
        config_dir = get_project_root() / config_dir
    return config_dir


def ensure_directories(settings: Settings) -> None:
    """Ensure all required directories exist."""
    root = get_project_root()

    dirs = [
        root / settings.general.data_dir,
        root / settings.general.logs_dir,
        root / settings.storage.reports_dir,
    ]

    for dir_path in dirs:
        dir_path.mkdir(parents=True, exist_ok=True)
