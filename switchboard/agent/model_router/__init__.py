"""Model chains and rate-limit-aware fallback execution.

Each agent resolves an ordered chain of backend models (ModelCatalog); the
ModelFallbackExecutor runs a completion against that chain, advancing to
the next backend only when the current one is rate limited.
"""

from __future__ import annotations

from switchboard.agent.model_router.chain import (
    FALLBACK_MODELS,
    PRIMARY_MODELS,
    ModelCatalog,
    ModelConfig,
    ModelDefinition,
    parse_model_override,
)
from switchboard.agent.model_router.fallback import (
    AllModelsRateLimitedError,
    FallbackResult,
    ModelChainEmptyError,
    ModelExecutionError,
    ModelFallbackExecutor,
    UsedModel,
    default_client_factory,
)

__all__ = [
    "AllModelsRateLimitedError",
    "FALLBACK_MODELS",
    "FallbackResult",
    "ModelCatalog",
    "ModelChainEmptyError",
    "ModelConfig",
    "ModelDefinition",
    "ModelExecutionError",
    "ModelFallbackExecutor",
    "PRIMARY_MODELS",
    "UsedModel",
    "default_client_factory",
    "parse_model_override",
]
