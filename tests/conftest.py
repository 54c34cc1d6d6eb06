"""
Shared test fixtures for pytest.

Provides common fixtures for all test modules:
- settings: Settings with fake provider keys and no Redis/DB
- registry: the built-in CapabilityRegistry
- bare_settings: Settings with no provider credentials

Test doubles (FakeLLMClient, make_completion, ...) live in fakes.py.
"""

from __future__ import annotations

import pytest

from switchboard.agent.registry import CapabilityRegistry, build_default_registry
from switchboard.config import Settings, get_settings
from switchboard.telemetry.logging import clear_context


# ------------------------------------------------------------------ #
# Settings
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    clear_context()
    yield
    get_settings.cache_clear()
    clear_context()


@pytest.fixture
def settings() -> Settings:
    """Settings with every provider key set and no external services."""
    return Settings(
        _env_file=None,
        openai_api_key="sk-test-openai",
        anthropic_api_key="sk-test-anthropic",
        google_generative_ai_key="test-google",
        perplexity_api_key="pplx-test",
        xai_api_key="xai-test",
        redis_url="",
        rate_limit_retry_delay_ms=0,
        router_retry_delay_ms=0,
    )


@pytest.fixture
def bare_settings() -> Settings:
    """Settings with no provider credentials at all."""
    return Settings(
        _env_file=None,
        openai_api_key=None,
        anthropic_api_key=None,
        google_generative_ai_key=None,
        perplexity_api_key=None,
        xai_api_key=None,
        redis_url="",
    )


@pytest.fixture
def registry() -> CapabilityRegistry:
    return build_default_registry()


