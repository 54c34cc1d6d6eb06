"""LLM router - asks a small classifier model which agent should answer.

The prompt embeds every agent descriptor, its 24h performance score and the
routing policy. The reply must be a JSON object matching
LLMRoutingResponse; anything else is a failure.

Classifier models are tried in order with a short pause between attempts.
A schema violation (including an unknown agent id) stops the loop at once,
since a different classifier is unlikely to repair a malformed contract.
When every model fails the router degrades to the heuristic decision with
source=fallback. This router never raises.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from switchboard.agent.llm import LLMClient
from switchboard.agent.model_router.chain import ModelCatalog, ModelConfig
from switchboard.agent.registry import AgentId, CapabilityRegistry, parse_agent_id
from switchboard.routing.heuristic import heuristic_route
from switchboard.routing.types import (
    DEFAULT_ROUTING_POLICY,
    RoutingDecision,
    RoutingPolicy,
    RoutingSource,
)
from switchboard.telemetry.metrics import (
    AgentMetrics,
    MetricsAggregator,
    calculate_agent_score,
)

log = structlog.get_logger(__name__)

ROUTER_SYSTEM_PROMPT = "You are a routing classifier. Respond with valid JSON only."
ROUTER_TEMPERATURE = 0.1
ROUTER_MAX_TOKENS = 200


class RouterResponseError(ValueError):
    """The classifier replied, but not with a usable routing decision."""


class LLMRoutingResponse(BaseModel):
    """Strict shape of the classifier's JSON reply."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    agent: AgentId
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = Field(min_length=1)
    fallback_agent: AgentId | None = Field(default=None, alias="fallbackAgent")
    tool_plan: list[str] = Field(default_factory=list, alias="toolPlan")

    @field_validator("agent", mode="before")
    @classmethod
    def _known_agent(cls, value: Any) -> AgentId:
        agent = parse_agent_id(value)
        if agent is None:
            raise ValueError(f"Invalid agent: {value!r}")
        return agent

    @field_validator("fallback_agent", mode="before")
    @classmethod
    def _lenient_fallback(cls, value: Any) -> AgentId | None:
        # An unknown fallback is dropped rather than failing the whole decision
        return parse_agent_id(value) if value else None

    @field_validator("tool_plan", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return value or []


def build_router_prompt(
    message: str,
    registry: CapabilityRegistry,
    metrics: Mapping[AgentId, AgentMetrics],
    policy: RoutingPolicy,
) -> str:
    """Render the classification prompt for one message."""
    agents = [
        {
            "id": descriptor.id.value,
            "name": descriptor.name,
            "description": descriptor.description,
            "capabilities": list(descriptor.capabilities),
        }
        for descriptor in registry.list_agents()
    ]
    performance: dict[str, Any] = {}
    for descriptor in registry.list_agents():
        agent_metrics = metrics.get(descriptor.id)
        entry: dict[str, Any] = {
            "score": round(calculate_agent_score(agent_metrics, policy), 3),
        }
        if agent_metrics is not None:
            entry.update(
                success_rate=round(agent_metrics.success_rate, 3),
                avg_latency_ms=round(agent_metrics.avg_latency_ms),
                total_requests=agent_metrics.total_requests,
                recent_failures=agent_metrics.recent_failures,
            )
        performance[descriptor.id.value] = entry

    return f"""You are a routing system for a multi-agent AI assistant. Analyze the user's message and select the best agent.

## Available Agents
{json.dumps(agents, indent=2)}

## Agent Performance (last 24h)
{json.dumps(performance, indent=2)}

## Routing Policy
- Primary goal: Task SUCCESS ({policy.success_weight * 100:.0f}% weight)
- Secondary goal: Low LATENCY ({policy.latency_weight * 100:.0f}% weight)
- Tertiary goal: Low COST ({policy.cost_weight * 100:.0f}% weight)

## User Message
{json.dumps(message)}

## Instructions
Select the agent most likely to successfully complete this task. Consider:
1. Which agent's capabilities best match the user's intent?
2. What is the agent's recent success rate?
3. Is this a clear-cut case or ambiguous?

Respond with JSON only:
{{
  "agent": "agent_id",
  "confidence": 0.0-1.0,
  "rationale": "brief explanation",
  "fallbackAgent": "agent_id or null",
  "toolPlan": ["tool1", "tool2"] or []
}}"""


def parse_router_response(content: str) -> LLMRoutingResponse:
    """Validate the classifier's reply against LLMRoutingResponse.

    Raises:
        RouterResponseError: empty reply, invalid JSON, or schema violation
    """
    if not content or not content.strip():
        raise RouterResponseError("Empty response from router")
    try:
        return LLMRoutingResponse.model_validate_json(content)
    except ValidationError as exc:
        raise RouterResponseError(f"Router response failed validation: {exc}") from exc


class LLMRouter:
    """Routes a message by asking a classifier model."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        catalog: ModelCatalog,
        models: Sequence[str],
        *,
        metrics: MetricsAggregator | None = None,
        client_factory: Callable[[ModelConfig], LLMClient] | None = None,
        retry_delay_s: float = 0.1,
    ) -> None:
        self._registry = registry
        self._catalog = catalog
        self._models = list(models)
        self._metrics = metrics
        self._client_factory = client_factory or (
            lambda config: LLMClient(api_key=config.api_key, base_url=config.base_url)
        )
        self._retry_delay_s = retry_delay_s

    def _fallback(self, message: str, reason: str) -> RoutingDecision:
        heuristic = heuristic_route(message, self._registry)
        log.info("router.llm_fallback", reason=reason, agent=heuristic.agent.value)
        return heuristic.with_changes(
            source=RoutingSource.FALLBACK,
            rationale=f"LLM routing failed, using heuristic: {heuristic.rationale}",
        )

    async def _load_metrics(self) -> Mapping[AgentId, AgentMetrics]:
        if self._metrics is None:
            return {}
        try:
            return await self._metrics.current()
        except Exception as exc:
            log.warning("router.metrics_unavailable", error=str(exc))
            return {}

    async def route(
        self,
        message: str,
        policy: RoutingPolicy = DEFAULT_ROUTING_POLICY,
    ) -> RoutingDecision:
        """Classify a message with the first classifier model that answers."""
        started = time.perf_counter()
        metrics = await self._load_metrics()
        prompt = build_router_prompt(message, self._registry, metrics, policy)
        messages = [
            {"role": "system", "content": ROUTER_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        configs = [config for config in map(self._catalog.resolve, self._models) if config]
        if not configs:
            return self._fallback(message, "no_classifier_models")

        last_error = "unknown"
        for attempt, config in enumerate(configs):
            if attempt > 0 and self._retry_delay_s > 0:
                await asyncio.sleep(self._retry_delay_s)
            try:
                completion = await self._client_factory(config).complete(
                    messages=messages,
                    model=config.litellm_model,
                    temperature=ROUTER_TEMPERATURE,
                    max_tokens=ROUTER_MAX_TOKENS,
                    response_format={"type": "json_object"},
                )
                parsed = parse_router_response(completion.content)
            except RouterResponseError as exc:
                log.warning("router.llm_invalid_response", model=config.label, error=str(exc))
                last_error = str(exc)
                break
            except Exception as exc:
                log.warning(
                    "router.llm_model_failed",
                    model=config.label,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                last_error = str(exc)
                continue

            self._check_latency(started, policy, config.label)

            agent_metrics = metrics.get(parsed.agent)
            return RoutingDecision(
                agent=parsed.agent,
                confidence=parsed.confidence,
                rationale=parsed.rationale,
                source=RoutingSource.LLM,
                fallback_agent=parsed.fallback_agent,
                tool_plan=tuple(parsed.tool_plan),
                performance_context=agent_metrics.to_dict() if agent_metrics else None,
            )

        self._check_latency(started, policy, None)
        return self._fallback(message, last_error)

    @staticmethod
    def _check_latency(started: float, policy: RoutingPolicy, model: str | None) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > policy.max_llm_routing_latency_ms:
            log.warning(
                "router.llm_latency_exceeded",
                elapsed_ms=round(elapsed_ms),
                budget_ms=policy.max_llm_routing_latency_ms,
                model=model,
            )
