"""
Library configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
This is the single source of truth for configuration - routing thresholds,
timeouts, cache and telemetry tuning all live here and nowhere else.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache
from typing import TYPE_CHECKING

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from switchboard.execution.speculative import SpeculativeConfig
    from switchboard.routing.types import RoutingPolicy
    from switchboard.routing.unified import RouteOptions


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


def _override(agent: str) -> AliasChoices:
    return AliasChoices(f"switchboard_{agent}_model", f"{agent}_model")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    log_level: str = Field(default="INFO", description="Minimum log level")
    json_logs: bool = Field(
        default=False,
        description="Render logs as JSON (production) instead of console output",
    )

    # ------------------------------------------------------------------ #
    # Provider credentials
    # ------------------------------------------------------------------ #
    openai_api_key: SecretStr | None = Field(default=None, description="OpenAI API key")
    anthropic_api_key: SecretStr | None = Field(default=None, description="Anthropic API key")
    google_generative_ai_key: SecretStr | None = Field(
        default=None,
        description="Google Generative AI (Gemini) API key",
    )
    perplexity_api_key: SecretStr | None = Field(default=None, description="Perplexity API key")
    xai_api_key: SecretStr | None = Field(default=None, description="xAI (Grok) API key")

    # ------------------------------------------------------------------ #
    # Per-agent model overrides, format "provider:model"
    # ------------------------------------------------------------------ #
    coder_model: str | None = Field(default=None, validation_alias=_override("coder"))
    researcher_model: str | None = Field(default=None, validation_alias=_override("researcher"))
    secretary_model: str | None = Field(default=None, validation_alias=_override("secretary"))
    home_model: str | None = Field(default=None, validation_alias=_override("home"))
    finance_model: str | None = Field(default=None, validation_alias=_override("finance"))
    imagegen_model: str | None = Field(default=None, validation_alias=_override("imagegen"))
    personality_model: str | None = Field(
        default=None,
        validation_alias=_override("personality"),
    )

    # ------------------------------------------------------------------ #
    # Routing
    # ------------------------------------------------------------------ #
    router_models: list[str] = Field(
        default=["openai/gpt-5-nano", "openai/gpt-5-mini"],
        description="Ordered classifier models tried by the LLM router (LiteLLM format)",
    )
    llm_routing_timeout_ms: int = Field(
        default=1000,
        ge=50,
        description="Deadline for the LLM routing step before degrading to heuristics",
    )
    semantic_routing_timeout_ms: int = Field(
        default=500,
        ge=10,
        description="Deadline for the optional semantic routing fast path",
    )
    semantic_min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    routing_success_weight: float = Field(default=0.6, ge=0.0)
    routing_latency_weight: float = Field(default=0.25, ge=0.0)
    routing_cost_weight: float = Field(default=0.15, ge=0.0)
    min_llm_confidence: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="LLM decisions below this confidence are cross-checked by heuristics",
    )
    max_llm_routing_latency_ms: int = Field(
        default=500,
        ge=1,
        description="LLM routing calls slower than this are logged as slow",
    )
    router_retry_delay_ms: int = Field(
        default=100,
        ge=0,
        description="Pause between classifier model attempts",
    )
    semantic_routing_enabled: bool = Field(
        default=False,
        description="Enable the embedding-similarity fast path (needs an OpenAI key)",
    )
    embedding_model: str = Field(
        default="openai/text-embedding-3-small",
        description="Embedding model for the semantic router (LiteLLM format)",
    )

    # ------------------------------------------------------------------ #
    # Speculative execution
    # ------------------------------------------------------------------ #
    speculative_enabled: bool = True
    speculative_max_parallel_agents: int = Field(default=3, ge=1, le=7)
    speculative_timeout_ms: int = Field(default=15000, ge=100)
    speculative_min_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    speculative_quality_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    speculative_cross_validation: bool = True

    # ------------------------------------------------------------------ #
    # Model fallback
    # ------------------------------------------------------------------ #
    rate_limit_retry_delay_ms: int = Field(
        default=500,
        ge=0,
        description="Pause before advancing the model chain after a rate limit",
    )
    completion_max_tokens: int = Field(default=1000, ge=1)

    # ------------------------------------------------------------------ #
    # Tools
    # ------------------------------------------------------------------ #
    default_tool_timeout_ms: int = Field(default=10000, ge=100)

    # ------------------------------------------------------------------ #
    # Response cache
    # ------------------------------------------------------------------ #
    redis_url: str = Field(
        default="",
        description="Redis URL for the response cache; empty selects the in-memory backend",
    )
    cache_max_entries: int = Field(default=1000, ge=1)
    cache_default_ttl_seconds: int = Field(default=3600, ge=1)
    cache_min_quality: float = Field(default=0.7, ge=0.0, le=1.0)
    cache_scope_by_user: bool = Field(
        default=False,
        description="Mix the user id into cache keys so users never share answers",
    )

    # ------------------------------------------------------------------ #
    # Telemetry
    # ------------------------------------------------------------------ #
    telemetry_buffer_size: int = Field(default=50, ge=1)
    telemetry_flush_interval_seconds: float = Field(default=5.0, gt=0)
    metrics_window_hours: int = Field(default=24, ge=1)
    database_url: str = Field(
        default="sqlite+aiosqlite:///./switchboard.db",
        description="Async SQLAlchemy database URL for the SQL telemetry sink",
    )
    db_echo_sql: bool = False

    # ------------------------------------------------------------------ #
    # Derived
    # ------------------------------------------------------------------ #
    def provider_key(self, env_key: str) -> str | None:
        """Return the configured secret for a provider key name, if any."""
        value: SecretStr | None = getattr(self, env_key.lower(), None)
        if value is None:
            return None
        secret = value.get_secret_value()
        return secret or None

    def model_override(self, agent: str) -> str | None:
        return getattr(self, f"{agent}_model", None)

    @property
    def has_llm_credentials(self) -> bool:
        return any(
            self.provider_key(key)
            for key in (
                "OPENAI_API_KEY",
                "ANTHROPIC_API_KEY",
                "GOOGLE_GENERATIVE_AI_KEY",
                "PERPLEXITY_API_KEY",
                "XAI_API_KEY",
            )
        )

    def routing_policy(self) -> RoutingPolicy:
        from switchboard.routing.types import RoutingPolicy

        return RoutingPolicy(
            success_weight=self.routing_success_weight,
            latency_weight=self.routing_latency_weight,
            cost_weight=self.routing_cost_weight,
            min_llm_confidence=self.min_llm_confidence,
            max_llm_routing_latency_ms=self.max_llm_routing_latency_ms,
        )

    def route_options(self) -> RouteOptions:
        from switchboard.routing.unified import RouteOptions

        return RouteOptions(
            llm_timeout_ms=self.llm_routing_timeout_ms,
            semantic_timeout_ms=self.semantic_routing_timeout_ms,
            semantic_min_confidence=self.semantic_min_confidence,
        )

    def speculative_config(self) -> SpeculativeConfig:
        from switchboard.execution.speculative import SpeculativeConfig

        return SpeculativeConfig(
            max_parallel_agents=self.speculative_max_parallel_agents,
            timeout_ms=self.speculative_timeout_ms,
            min_confidence_to_run=self.speculative_min_confidence,
            quality_threshold=self.speculative_quality_threshold,
            enable_cross_validation=self.speculative_cross_validation,
        )

    @property
    def is_dev(self) -> bool:
        return self.environment in (Environment.DEV, Environment.TEST)

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton.

    Call directly from the host application at startup and pass the result
    into the services that need it.
    """
    return Settings()
