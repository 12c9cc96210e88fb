"""
Tests for src/utils/config.py

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-CF-N-01 | Project config/ | Equivalence – normal | Shipped defaults load | - |
| TC-CF-N-02 | local.yaml settings section | Equivalence – normal | Deep-merged over settings.yaml | - |
| TC-CF-N-03 | PRIORART_RUN__TIMEOUT_SECONDS=300 | Equivalence – normal | Env wins, coerced to number | - |
| TC-CF-N-04 | PRIORART_RUN__PERSIST_REFUSED_RUNS=true | Equivalence – normal | Coerced to bool | - |
| TC-CF-N-05 | SERPAPI_API_KEY set, no key in yaml | Equivalence – normal | Key picked up | - |
| TC-CF-N-06 | LLM provider api_key_env | Equivalence – normal | Key read from named variable | - |
| TC-CF-B-01 | Empty config dir | Boundary – empty | Model defaults | - |
| TC-CF-A-01 | max_parallel_variants=4 | Boundary – max | ValidationError | - |
| TC-CF-A-02 | Unknown key in serpapi | Equivalence – abnormal | ValidationError | extra=forbid |
"""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from src.utils.config import get_project_root, load_settings

pytestmark = pytest.mark.unit


def write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")


@pytest.fixture(autouse=True)
def clear_provider_keys(monkeypatch):
    monkeypatch.delenv("SERPAPI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


class TestLoadSettings:
    """YAML and environment layering."""

    def test_project_defaults(self):
        """TC-CF-N-01: Shipped settings.yaml loads."""
        settings = load_settings(get_project_root() / "config")

        assert settings.search.max_parallel_variants == 3
        assert settings.search.rank_fusion_k == 60
        assert settings.run.timeout_seconds == 600
        assert [p.name for p in settings.llm.providers] == ["ollama", "openai"]

    def test_local_override(self, tmp_path):
        """TC-CF-N-02: local.yaml overrides are deep-merged."""
        # Given: Base settings and a local override of one key
        write_yaml(tmp_path / "settings.yaml", {"run": {"timeout_seconds": 600, "grace_seconds": 60}})
        write_yaml(tmp_path / "local.yaml", {"settings": {"run": {"timeout_seconds": 300}}})

        # When: Loading
        settings = load_settings(tmp_path)

        # Then: Override applied, sibling kept
        assert settings.run.timeout_seconds == 300
        assert settings.run.grace_seconds == 60

    def test_env_override_number(self, tmp_path, monkeypatch):
        """TC-CF-N-03: Environment beats YAML."""
        write_yaml(tmp_path / "settings.yaml", {"run": {"timeout_seconds": 600}})
        monkeypatch.setenv("PRIORART_RUN__TIMEOUT_SECONDS", "300")
        monkeypatch.setenv("PRIORART_SEARCH__RETRY_BASE_DELAY", "0.5")

        settings = load_settings(tmp_path)

        assert settings.run.timeout_seconds == 300
        assert settings.search.retry_base_delay == 0.5

    def test_env_override_bool(self, tmp_path, monkeypatch):
        """TC-CF-N-04: Boolean strings are coerced."""
        monkeypatch.setenv("PRIORART_RUN__PERSIST_REFUSED_RUNS", "true")
        monkeypatch.setenv("PRIORART_GENERAL__LOG_LEVEL", "DEBUG")

        settings = load_settings(tmp_path)

        assert settings.run.persist_refused_runs is True
        assert settings.general.log_level == "DEBUG"

    def test_serpapi_key_fallback(self, tmp_path, monkeypatch):
        """TC-CF-N-05: Provider key from its conventional variable."""
        monkeypatch.setenv("SERPAPI_API_KEY", "secret")

        assert load_settings(tmp_path).serpapi.api_key == "secret"

    def test_llm_key_env(self, tmp_path, monkeypatch):
        """TC-CF-N-06: LLM keys come from api_key_env."""
        write_yaml(
            tmp_path / "settings.yaml",
            {
                "llm": {
                    "providers": [
                        {
                            "name": "openai",
                            "kind": "openai",
                            "base_url": "https://api.openai.com/v1",
                            "model": "gpt-4o-mini",
                            "api_key_env": "OPENAI_API_KEY",
                        }
                    ]
                }
            },
        )
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

        settings = load_settings(tmp_path)

        assert settings.llm.providers[0].api_key == "sk-test"

    def test_empty_dir(self, tmp_path):
        """TC-CF-B-01: No files means model defaults."""
        settings = load_settings(tmp_path)

        assert settings.details.delay_seconds == 2.0
        assert settings.details.ttl_days == 14
        assert settings.novelty.auto_report is True
        assert settings.serpapi.api_key is None

    def test_variant_parallelism_bound(self, tmp_path):
        """TC-CF-A-01: More than three concurrent variants is rejected."""
        write_yaml(tmp_path / "settings.yaml", {"search": {"max_parallel_variants": 4}})

        with pytest.raises(ValidationError):
            load_settings(tmp_path)

    def test_unknown_key(self, tmp_path):
        """TC-CF-A-02: Typos in provider config are rejected."""
        write_yaml(tmp_path / "settings.yaml", {"serpapi": {"api_kye": "x"}})

        with pytest.raises(ValidationError):
            load_settings(tmp_path)
