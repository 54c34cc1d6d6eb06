"""Model catalog - prioritized backend chains for each agent.

Every agent has a primary model and an ordered list of fallbacks, possibly
spread across providers. A chain is resolved per request from settings:

1. Optional per-agent override ("provider:model", e.g. SWITCHBOARD_CODER_MODEL)
2. The agent's primary model
3. The agent's fallback models, in order

Entries whose provider has no API key configured are dropped, so a chain
only ever contains backends that can actually be called. Duplicates (the
same provider/model reached twice) keep their first position.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from switchboard.agent.registry import AgentId

if TYPE_CHECKING:
    from switchboard.config import Settings

log = structlog.get_logger(__name__)

# Provider name -> settings key holding its credential
PROVIDER_ENV_KEYS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_GENERATIVE_AI_KEY",
    "perplexity": "PERPLEXITY_API_KEY",
    "xai": "XAI_API_KEY",
}

# Provider name -> LiteLLM model prefix
_LITELLM_PREFIXES: dict[str, str] = {
    "openai": "openai",
    "anthropic": "anthropic",
    "google": "gemini",
    "perplexity": "perplexity",
    "xai": "xai",
}


@dataclass(frozen=True)
class ModelDefinition:
    """Static description of a backend, before credentials are resolved."""

    model: str
    provider: str
    base_url: str | None = None

    def __post_init__(self) -> None:
        if not self.model:
            raise ValueError("model cannot be empty")
        if self.provider not in PROVIDER_ENV_KEYS:
            raise ValueError(f"Unknown provider: {self.provider!r}")

    @property
    def env_key(self) -> str:
        return PROVIDER_ENV_KEYS[self.provider]


@dataclass(frozen=True)
class ModelConfig:
    """A callable backend: model identity plus resolved credentials.

    Attributes:
        model: Provider-native model name (e.g. "gpt-5-mini")
        provider: Provider name (openai, anthropic, google, perplexity, xai)
        api_key: Resolved credential (never logged)
        base_url: Optional endpoint override
        is_fallback: True for every entry after the first in a chain
    """

    model: str
    provider: str
    api_key: str | None = field(default=None, repr=False)
    base_url: str | None = None
    is_fallback: bool = False

    @property
    def litellm_model(self) -> str:
        """Model identifier in LiteLLM "prefix/model" format."""
        prefix = _LITELLM_PREFIXES.get(self.provider, self.provider)
        if self.model.startswith(f"{prefix}/"):
            return self.model
        return f"{prefix}/{self.model}"

    @property
    def label(self) -> str:
        return f"{self.provider}/{self.model}"


_ANTHROPIC = "anthropic"
_GOOGLE = "google"
_OPENAI = "openai"
_PERPLEXITY = "perplexity"
_XAI = "xai"

PRIMARY_MODELS: dict[AgentId, ModelDefinition] = {
    AgentId.CODER: ModelDefinition("claude-opus-4-5-20251101", _ANTHROPIC),
    AgentId.RESEARCHER: ModelDefinition("sonar-reasoning-pro", _PERPLEXITY),
    AgentId.SECRETARY: ModelDefinition("gemini-3-flash-preview", _GOOGLE),
    AgentId.HOME: ModelDefinition("gpt-5-mini", _OPENAI),
    AgentId.FINANCE: ModelDefinition("gemini-3-flash-preview", _GOOGLE),
    AgentId.IMAGEGEN: ModelDefinition("gpt-5-mini", _OPENAI),
    AgentId.PERSONALITY: ModelDefinition("grok-4-1-fast", _XAI),
}

FALLBACK_MODELS: dict[AgentId, tuple[ModelDefinition, ...]] = {
    AgentId.CODER: (
        ModelDefinition("claude-sonnet-4-5-20250929", _ANTHROPIC),
        ModelDefinition("gpt-5.2", _OPENAI),
        ModelDefinition("gpt-5-mini", _OPENAI),
    ),
    AgentId.RESEARCHER: (
        ModelDefinition("sonar-pro", _PERPLEXITY),
        ModelDefinition("sonar", _PERPLEXITY),
        ModelDefinition("gpt-5-mini", _OPENAI),
    ),
    AgentId.SECRETARY: (
        ModelDefinition("gemini-3-pro-preview", _GOOGLE),
        ModelDefinition("gpt-5-mini", _OPENAI),
    ),
    AgentId.HOME: (
        ModelDefinition("gpt-5.2", _OPENAI),
        ModelDefinition("gpt-5-nano", _OPENAI),
    ),
    AgentId.FINANCE: (
        ModelDefinition("gemini-3-pro-preview", _GOOGLE),
        ModelDefinition("gpt-5-mini", _OPENAI),
    ),
    AgentId.IMAGEGEN: (
        ModelDefinition("gpt-5.2", _OPENAI),
        ModelDefinition("gpt-5-nano", _OPENAI),
    ),
    AgentId.PERSONALITY: (
        ModelDefinition("gpt-5.2", _OPENAI),
        ModelDefinition("gpt-5-mini", _OPENAI),
        ModelDefinition("gpt-5-nano", _OPENAI),
    ),
}


def parse_model_override(value: str | None) -> ModelDefinition | None:
    """Parse a "provider:model" override string.

    Returns None (and logs) for empty or malformed values so a typo in an
    environment variable degrades to the built-in chain instead of failing.
    """
    if not value:
        return None
    provider, sep, model = value.partition(":")
    provider = provider.strip().lower()
    model = model.strip()
    if not sep or not model or provider not in PROVIDER_ENV_KEYS:
        log.warning("model_catalog.invalid_override", value=value)
        return None
    return ModelDefinition(model=model, provider=provider)


class ModelCatalog:
    """Resolves model chains for agents from settings.

    Chains are rebuilt on each call (cheap) so credential changes in the
    injected settings are picked up without restarting.
    """

    def __init__(
        self,
        settings: Settings,
        primary: dict[AgentId, ModelDefinition] | None = None,
        fallbacks: dict[AgentId, tuple[ModelDefinition, ...]] | None = None,
    ) -> None:
        self._settings = settings
        self._primary = primary if primary is not None else PRIMARY_MODELS
        self._fallbacks = fallbacks if fallbacks is not None else FALLBACK_MODELS

    def definitions_for(self, agent: AgentId) -> list[ModelDefinition]:
        """Return the agent's full chain before credential filtering."""
        definitions: list[ModelDefinition] = []
        override = parse_model_override(self._settings.model_override(agent.value))
        if override is not None:
            definitions.append(override)
        if agent in self._primary:
            definitions.append(self._primary[agent])
        definitions.extend(self._fallbacks.get(agent, ()))

        seen: set[tuple[str, str]] = set()
        unique: list[ModelDefinition] = []
        for definition in definitions:
            key = (definition.provider, definition.model)
            if key not in seen:
                seen.add(key)
                unique.append(definition)
        return unique

    def chain_for(self, agent: AgentId) -> list[ModelConfig]:
        """Return the callable chain for an agent, highest priority first.

        May be empty when no provider in the chain has credentials; callers
        must check before handing it to the fallback executor.
        """
        chain: list[ModelConfig] = []
        skipped: list[str] = []
        for definition in self.definitions_for(agent):
            api_key = self._settings.provider_key(definition.env_key)
            if not api_key:
                skipped.append(f"{definition.provider}/{definition.model}")
                continue
            chain.append(
                ModelConfig(
                    model=definition.model,
                    provider=definition.provider,
                    api_key=api_key,
                    base_url=definition.base_url,
                    is_fallback=bool(chain),
                )
            )

        if skipped:
            log.debug(
                "model_catalog.entries_skipped",
                agent=agent.value,
                skipped=skipped,
                reason="missing_api_key",
            )
        return chain

    def model_for(self, agent: AgentId) -> ModelConfig | None:
        """Return the highest-priority callable model for an agent."""
        chain = self.chain_for(agent)
        return chain[0] if chain else None

    def has_credentials(self, agent: AgentId) -> bool:
        return self.model_for(agent) is not None

    def resolve(self, litellm_model: str) -> ModelConfig | None:
        """Resolve a LiteLLM "prefix/model" string into a callable config.

        Used for the classifier models, which are configured as plain
        LiteLLM identifiers rather than per-agent chains. Returns None when
        the prefix is unknown or its provider has no credential.
        """
        prefix, sep, model = litellm_model.partition("/")
        if not sep or not model:
            return None
        provider = next((name for name, p in _LITELLM_PREFIXES.items() if p == prefix), None)
        if provider is None:
            return None
        api_key = self._settings.provider_key(PROVIDER_ENV_KEYS[provider])
        if not api_key:
            return None
        return ModelConfig(model=model, provider=provider, api_key=api_key)
