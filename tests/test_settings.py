"""Tests for pydantic-settings configuration."""

import pytest
from pydantic import ValidationError

from switchboard.config import Environment, Settings, get_settings


class TestSettings:
    def test_defaults(self, bare_settings):
        assert bare_settings.environment == Environment.DEV
        assert bare_settings.router_models == ["openai/gpt-5-nano", "openai/gpt-5-mini"]
        assert bare_settings.speculative_enabled is True
        assert bare_settings.semantic_routing_enabled is False
        assert bare_settings.has_llm_credentials is False
        assert bare_settings.is_dev

    def test_provider_key_lookup(self, settings):
        assert settings.provider_key("OPENAI_API_KEY") == "sk-test-openai"
        assert settings.provider_key("NOT_A_PROVIDER") is None
        assert settings.has_llm_credentials is True

    def test_empty_key_counts_as_missing(self):
        settings = Settings(_env_file=None, openai_api_key="", xai_api_key=None)
        assert settings.provider_key("OPENAI_API_KEY") is None

    def test_model_override_from_environment(self, monkeypatch):
        monkeypatch.setenv("SWITCHBOARD_HOME_MODEL", "anthropic:claude-haiku-4-5")
        monkeypatch.setenv("CODER_MODEL", "openai:gpt-5.2")
        settings = Settings(_env_file=None)
        assert settings.model_override("home") == "anthropic:claude-haiku-4-5"
        assert settings.model_override("coder") == "openai:gpt-5.2"
        assert settings.model_override("finance") is None

    def test_derived_objects(self, settings):
        tuned = settings.model_copy(
            update={"min_llm_confidence": 0.8, "llm_routing_timeout_ms": 250, "speculative_timeout_ms": 2000}
        )
        assert tuned.routing_policy().min_llm_confidence == 0.8
        assert tuned.route_options().llm_timeout_ms == 250
        assert tuned.route_options().force_heuristic is False
        assert tuned.speculative_config().timeout_ms == 2000

    @pytest.mark.parametrize(
        "field,value",
        [("cache_min_quality", 1.5), ("llm_routing_timeout_ms", 10), ("speculative_max_parallel_agents", 0)],
    )
    def test_out_of_range_values_are_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "prod")
    first = get_settings()
    assert first is get_settings()
    assert first.is_prod
