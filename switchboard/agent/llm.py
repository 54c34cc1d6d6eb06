"""LiteLLM wrapper for model-agnostic completion calls.

LiteLLM provides a unified interface over every provider the agents use
(OpenAI, Anthropic, Gemini, Perplexity, xAI). This module:
- Wraps litellm.acompletion() and litellm.aembedding()
- Retries transient unavailability with exponential backoff via tenacity
- Normalizes provider errors to our domain exceptions, preserving the
  HTTP status / provider code so rate limits stay classifiable
- Reduces responses to a small Completion shape (content + tool calls)

Rate limits are not retried here; the fallback chain moves on to the next
backend instead.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import litellm
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger(__name__)


class LLMError(Exception):
    """Any failed provider call, with the HTTP status and provider code when known."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class LLMRateLimitError(LLMError):
    """HTTP 429 or a provider quota code."""


class LLMUnavailableError(LLMError):
    """5xx or connection failure; retried before surfacing."""


class LLMTimeoutError(LLMError):
    """LLM call exceeded the provider timeout."""


class LLMAuthError(LLMError):
    """Credentials were rejected by the provider."""


@dataclass
class ToolCall:
    """A function call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = "{}"

    def to_message_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


@dataclass
class Completion:
    """Provider-neutral view of one chat completion."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)

    def assistant_message(self) -> dict[str, Any]:
        """Return the assistant turn in OpenAI message format."""
        message: dict[str, Any] = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            message["tool_calls"] = [call.to_message_dict() for call in self.tool_calls]
        return message


def _parse_tool_calls(raw_calls: Any) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for index, raw in enumerate(raw_calls or []):
        function = getattr(raw, "function", None)
        if function is None:
            continue
        raw_arguments = getattr(function, "arguments", None) or "{}"
        try:
            arguments = json.loads(raw_arguments)
        except (TypeError, ValueError):
            log.warning(
                "llm.tool_arguments_unparseable",
                tool=getattr(function, "name", ""),
                raw=str(raw_arguments)[:200],
            )
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {"value": arguments}
        calls.append(
            ToolCall(
                id=getattr(raw, "id", None) or f"call_{index}",
                name=getattr(function, "name", "") or "",
                arguments=arguments,
                raw_arguments=raw_arguments,
            )
        )
    return calls


def _translate(exc: Exception) -> LLMError:
    status = getattr(exc, "status_code", None)
    status = status if isinstance(status, int) else None
    code = getattr(exc, "code", None)
    code = code if isinstance(code, str) else None

    if isinstance(exc, litellm.exceptions.RateLimitError):
        return LLMRateLimitError(
            f"Rate limit from upstream LLM: {exc}", status_code=429, code=code
        )
    if isinstance(exc, litellm.exceptions.AuthenticationError):
        return LLMAuthError(
            f"LLM authentication failed: {exc}", status_code=status or 401, code=code
        )
    if isinstance(exc, litellm.exceptions.Timeout):
        return LLMTimeoutError(f"LLM request timed out: {exc}", status_code=408, code=code)
    if isinstance(
        exc,
        (litellm.exceptions.ServiceUnavailableError, litellm.exceptions.APIConnectionError),
    ):
        return LLMUnavailableError(
            f"LLM service unavailable: {exc}", status_code=status or 503, code=code
        )
    return LLMError(f"LLM completion failed: {exc}", status_code=status, code=code)


class LLMClient:
    """Thin wrapper around LiteLLM bound to one provider credential.

    A client is cheap to build; the fallback executor constructs a fresh
    one for every chain attempt so no state leaks between backends.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        request_timeout_s: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._request_timeout_s = request_timeout_s

    def _provider_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"timeout": self._request_timeout_s}
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._base_url:
            kwargs["api_base"] = self._base_url
        return kwargs

    @retry(
        retry=retry_if_exception_type(LLMUnavailableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def complete(
        self,
        *,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = 0.7,
        max_tokens: int = 1000,
        tools: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> Completion:
        """One chat completion through litellm.acompletion().

        Args:
            messages: OpenAI-format role/content dicts
            model: LiteLLM model identifier, e.g. "anthropic/claude-sonnet-4-5"
            temperature: None leaves the provider default
            max_tokens: Output token cap
            tools: Function-calling schemas; tool_choice is "auto" when given
            **kwargs: Passed through to litellm

        Returns:
            Completion with text content and any requested tool calls

        Raises:
            LLMRateLimitError: Upstream rate limit (not retried)
            LLMUnavailableError: Still unavailable after three attempts
            LLMError: Anything else the provider rejected
        """
        log.debug(
            "llm.completion_request",
            model=model,
            message_count=len(messages),
            max_tokens=max_tokens,
            tool_count=len(tools or []),
        )

        request: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            **self._provider_kwargs(),
            **kwargs,
        }
        if temperature is not None:
            request["temperature"] = temperature
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        try:
            response = await litellm.acompletion(**request)
        except Exception as exc:
            raise _translate(exc) from exc

        completion = self._to_completion(response, model)
        if completion.usage:
            log.info("llm.completion_done", model=model, **completion.usage)
        return completion

    def _to_completion(self, response: Any, model: str) -> Completion:
        try:
            message = response.choices[0].message
        except (AttributeError, IndexError, KeyError):
            return Completion(content="", model=model)

        usage: dict[str, int] = {}
        raw_usage = getattr(response, "usage", None)
        if raw_usage:
            for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
                value = getattr(raw_usage, key, None)
                if isinstance(value, int):
                    usage[key] = value

        return Completion(
            content=getattr(message, "content", None) or "",
            tool_calls=_parse_tool_calls(getattr(message, "tool_calls", None)),
            model=getattr(response, "model", None) or model,
            usage=usage,
        )

    @retry(
        retry=retry_if_exception_type(LLMUnavailableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def embed(self, texts: list[str], model: str) -> list[list[float]]:
        """Embedding vectors for texts, in input order. Empty input makes no call."""
        if not texts:
            return []

        try:
            response = await litellm.aembedding(
                model=model,
                input=texts,
                **self._provider_kwargs(),
            )
        except Exception as exc:
            raise _translate(exc) from exc

        vectors = [item["embedding"] for item in response.data]
        log.debug("llm.embedding_done", model=model, texts=len(texts), dims=len(vectors[0]) if vectors else 0)
        return vectors
