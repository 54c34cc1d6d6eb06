"""Model fallback executor - resilient completions across a model chain.

The executor runs one unit of work against the first backend of a chain
and only moves on when that backend is rate limited:

1. Build a fresh client for the entry
2. Run the work function
3. On a rate limit: log, pause briefly, advance to the next entry
4. On any other error: abort immediately with a provider-qualified error
5. If the last entry is rate limited too: raise AllModelsRateLimitedError

Non-rate-limit errors (bad request, auth, malformed tool schema) would fail
the same way on every backend, so they are not retried down the chain.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog

from switchboard.agent.errors import is_rate_limit_error
from switchboard.agent.llm import LLMClient
from switchboard.agent.model_router.chain import ModelConfig

log = structlog.get_logger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[ModelConfig], LLMClient]
WorkFn = Callable[[LLMClient, ModelConfig], Awaitable[T]]


def default_client_factory(config: ModelConfig) -> LLMClient:
    return LLMClient(api_key=config.api_key, base_url=config.base_url)


class ModelChainEmptyError(ValueError):
    """Raised when asked to execute against a chain with no entries."""


class ModelExecutionError(Exception):
    """A non-rate-limit failure on one chain entry.

    The message is prefixed with "[provider/model]". Status and provider
    code are copied from the underlying error so callers can still classify
    it.
    """

    def __init__(self, config: ModelConfig, cause: BaseException) -> None:
        super().__init__(f"[{config.label}] {cause}")
        self.provider = config.provider
        self.model = config.model
        self.status_code = getattr(cause, "status_code", None)
        self.code = getattr(cause, "code", None)


class AllModelsRateLimitedError(Exception):
    """Every entry in the chain was rate limited."""

    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(self, context: str, attempts: Sequence[str], last_error: BaseException) -> None:
        super().__init__(
            f"All models rate limited for {context}. "
            f"Tried: {', '.join(attempts)}. Last error: {last_error}"
        )
        self.context = context
        self.attempts = list(attempts)
        self.last_error = last_error


@dataclass(frozen=True)
class UsedModel:
    """Which chain entry produced the result. index > 0 means a fallback occurred."""

    config: ModelConfig
    index: int

    @property
    def is_fallback(self) -> bool:
        return self.index > 0


@dataclass
class FallbackResult(Generic[T]):
    result: T
    used_model: UsedModel
    rate_limited: list[str] = field(default_factory=list)


class ModelFallbackExecutor:
    """Executes work against a model chain, falling back on rate limits."""

    def __init__(
        self,
        client_factory: ClientFactory = default_client_factory,
        rate_limit_delay_s: float = 0.5,
        max_events: int = 200,
    ) -> None:
        self._client_factory = client_factory
        self._rate_limit_delay_s = rate_limit_delay_s
        self._fallback_events: deque[dict[str, Any]] = deque(maxlen=max_events)

    async def execute(
        self,
        chain: Sequence[ModelConfig],
        work: WorkFn[T],
        *,
        context: str = "completion",
    ) -> FallbackResult[T]:
        """Run work against the chain until an entry succeeds.

        Args:
            chain: Non-empty ordered backends, highest priority first
            work: Coroutine function called with (client, config)
            context: Short label for logs and the exhaustion error

        Returns:
            FallbackResult with the work's result and the entry that produced it

        Raises:
            ModelChainEmptyError: chain has no entries
            ModelExecutionError: an entry failed with a non-rate-limit error
            AllModelsRateLimitedError: every entry was rate limited
        """
        if not chain:
            raise ModelChainEmptyError(f"No models configured for {context}")

        attempted: list[str] = []
        for index, config in enumerate(chain):
            attempted.append(config.label)
            client = self._client_factory(config)
            try:
                result = await work(client, config)
            except Exception as exc:
                if not is_rate_limit_error(exc):
                    log.error(
                        "fallback.model_failed",
                        context=context,
                        provider=config.provider,
                        model=config.model,
                        index=index,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    raise ModelExecutionError(config, exc) from exc

                self._fallback_events.append(
                    {
                        "context": context,
                        "provider": config.provider,
                        "model": config.model,
                        "index": index,
                        "error": str(exc),
                    }
                )
                is_last = index == len(chain) - 1
                log.warning(
                    "fallback.rate_limited",
                    context=context,
                    provider=config.provider,
                    model=config.model,
                    index=index,
                    remaining=len(chain) - index - 1,
                )
                if is_last:
                    log.error(
                        "fallback.all_rate_limited",
                        context=context,
                        attempted=attempted,
                    )
                    raise AllModelsRateLimitedError(context, attempted, exc) from exc

                if self._rate_limit_delay_s > 0:
                    await asyncio.sleep(self._rate_limit_delay_s)
                continue

            used = UsedModel(config=config, index=index)
            if used.is_fallback:
                log.info(
                    "fallback.used_fallback_model",
                    context=context,
                    provider=config.provider,
                    model=config.model,
                    index=index,
                    primary=chain[0].label,
                )
            else:
                log.debug("fallback.primary_succeeded", context=context, model=config.label)
            return FallbackResult(result=result, used_model=used, rate_limited=attempted[:-1])

        # Unreachable: the loop either returns or raises on the last entry
        raise AllModelsRateLimitedError(context, attempted, RuntimeError("no attempts made"))

    def get_fallback_events(self) -> list[dict[str, Any]]:
        """Get the rate-limit events seen so far (most recent last)."""
        return list(self._fallback_events)

    def reset_events(self) -> None:
        """Clear fallback event history. Used for testing."""
        self._fallback_events.clear()
        log.debug("fallback.events_reset")
