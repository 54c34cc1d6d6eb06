"""Test doubles shared across test modules."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

from switchboard.agent.llm import Completion, ToolCall
from switchboard.agent.model_router.chain import ModelConfig


def make_completion(
    content: str = "",
    *,
    tool_calls: Sequence[ToolCall] = (),
    model: str = "openai/gpt-5-mini",
) -> Completion:
    return Completion(content=content, tool_calls=list(tool_calls), model=model, usage={})


class FakeLLMClient:
    """Stands in for LLMClient; replies come from a script or a callable.

    Each entry in `script` is either a Completion, a string (wrapped into a
    Completion), or an exception instance to raise. A responder, when
    given, is called with the complete() kwargs and may return any of
    those, or an awaitable resolving to one.
    """

    def __init__(
        self,
        script: Sequence[Any] = (),
        *,
        responder: Callable[..., Any] | None = None,
        embeddings: dict[str, list[float]] | None = None,
    ) -> None:
        self._script = list(script)
        self._responder = responder
        self._embeddings = embeddings or {}
        self.calls: list[dict[str, Any]] = []
        self.embed_calls = 0

    async def complete(self, **kwargs: Any) -> Completion:
        self.calls.append(kwargs)
        if self._responder is not None:
            item = self._responder(**kwargs)
        elif self._script:
            item = self._script.pop(0)
        else:
            item = ""
        if hasattr(item, "__await__"):
            item = await item
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, Completion):
            return item
        return make_completion(item, model=kwargs.get("model", "fake"))

    async def embed(self, texts: list[str], model: str) -> list[list[float]]:
        self.embed_calls += 1
        return [self._embeddings.get(text, [0.0, 0.0, 1.0]) for text in texts]


class RateLimited(Exception):
    """Provider-style 429."""

    status_code = 429

    def __init__(self, message: str = "429 Too Many Requests") -> None:
        super().__init__(message)


def client_factory(
    clients: dict[str, FakeLLMClient],
    default: FakeLLMClient | None = None,
) -> Callable[[ModelConfig], FakeLLMClient]:
    """Map ModelConfig.label ("provider/model") to a fake client."""

    def factory(config: ModelConfig) -> FakeLLMClient:
        if config.label in clients:
            return clients[config.label]
        if default is not None:
            return default
        raise AssertionError(f"Unexpected model {config.label}")

    return factory
