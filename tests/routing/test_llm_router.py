"""Tests for the LLM classifier router."""

import asyncio
import json
from unittest.mock import patch

import pytest

from fakes import FakeLLMClient, RateLimited, client_factory
from switchboard.agent.model_router.chain import ModelCatalog
from switchboard.agent.registry import AgentId
from switchboard.routing.llm_router import (
    ROUTER_TEMPERATURE,
    LLMRouter,
    RouterResponseError,
    build_router_prompt,
    parse_router_response,
)
from switchboard.routing.types import DEFAULT_ROUTING_POLICY, RoutingPolicy, RoutingSource
from switchboard.telemetry.events import TelemetryEvent, TelemetryEventType
from switchboard.telemetry.metrics import AgentMetrics, MetricsAggregator
from switchboard.telemetry.sink import InMemoryTelemetrySink

MODELS = ["openai/gpt-5-nano", "openai/gpt-5-mini"]


def _reply(agent="coder", confidence=0.9, **extra) -> str:
    body = {"agent": agent, "confidence": confidence, "rationale": "code question"}
    body.update(extra)
    return json.dumps(body)


def _router(registry, settings, clients, **kwargs) -> LLMRouter:
    return LLMRouter(
        registry,
        ModelCatalog(settings),
        MODELS,
        client_factory=client_factory(clients),
        retry_delay_s=0,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


class TestParseRouterResponse:
    """The classifier contract is validated strictly."""

    def test_valid_reply_with_aliases(self):
        parsed = parse_router_response(_reply(fallbackAgent="researcher", toolPlan=["github_get_file"]))
        assert parsed.agent == AgentId.CODER
        assert parsed.fallback_agent == AgentId.RESEARCHER
        assert parsed.tool_plan == ["github_get_file"]

    def test_unknown_agent_is_rejected(self):
        with pytest.raises(RouterResponseError, match="Invalid agent"):
            parse_router_response(_reply(agent="wizard"))

    def test_unknown_fallback_is_dropped(self):
        parsed = parse_router_response(_reply(fallbackAgent="wizard"))
        assert parsed.fallback_agent is None

    def test_null_tool_plan_is_empty(self):
        assert parse_router_response(_reply(toolPlan=None)).tool_plan == []

    @pytest.mark.parametrize("content", ["", "   ", "not json", '{"agent": "coder"}'])
    def test_malformed_replies(self, content):
        with pytest.raises(RouterResponseError):
            parse_router_response(content)

    def test_confidence_out_of_range(self):
        with pytest.raises(RouterResponseError):
            parse_router_response(_reply(confidence=1.5))


class TestBuildRouterPrompt:
    def test_prompt_embeds_agents_scores_and_policy(self, registry):
        metrics = {
            AgentId.CODER: AgentMetrics(
                agent=AgentId.CODER,
                success_rate=0.9,
                avg_latency_ms=2000,
                total_requests=10,
                recent_failures=1,
            )
        }
        prompt = build_router_prompt("fix my bug", registry, metrics, DEFAULT_ROUTING_POLICY)
        assert '"id": "coder"' in prompt
        assert '"success_rate": 0.9' in prompt
        assert "Task SUCCESS (60% weight)" in prompt
        assert '"fix my bug"' in prompt
        # Agents without data get the neutral score
        assert '"score": 0.5' in prompt


# ---------------------------------------------------------------------------
# LLMRouter.route
# ---------------------------------------------------------------------------


class TestLLMRouter:
    """Model iteration, fatal errors and heuristic degradation."""

    @pytest.mark.asyncio
    async def test_first_model_answers(self, registry, settings):
        nano = FakeLLMClient([_reply(fallbackAgent="personality", toolPlan=["github_get_file"])])
        router = _router(registry, settings, {"openai/gpt-5-nano": nano})

        decision = await router.route("why does my function throw?")

        assert decision.agent == AgentId.CODER
        assert decision.source == RoutingSource.LLM
        assert decision.confidence == 0.9
        assert decision.fallback_agent == AgentId.PERSONALITY
        assert decision.tool_plan == ("github_get_file",)
        call = nano.calls[0]
        assert call["temperature"] == ROUTER_TEMPERATURE
        assert call["response_format"] == {"type": "json_object"}
        assert call["model"] == "openai/gpt-5-nano"

    @pytest.mark.asyncio
    async def test_transport_error_moves_to_next_model(self, registry, settings):
        router = _router(
            registry,
            settings,
            {
                "openai/gpt-5-nano": FakeLLMClient([RateLimited()]),
                "openai/gpt-5-mini": FakeLLMClient([_reply(agent="home")]),
            },
        )
        decision = await router.route("dim the lights")
        assert decision.agent == AgentId.HOME
        assert decision.source == RoutingSource.LLM

    @pytest.mark.asyncio
    async def test_invalid_agent_is_fatal(self, registry, settings):
        """A schema violation stops the loop; the second model is never asked."""
        mini = FakeLLMClient([_reply(agent="home")])
        router = _router(
            registry,
            settings,
            {
                "openai/gpt-5-nano": FakeLLMClient([_reply(agent="wizard")]),
                "openai/gpt-5-mini": mini,
            },
        )
        decision = await router.route("turn on the living room lights")

        assert mini.calls == []
        assert decision.source == RoutingSource.FALLBACK
        assert decision.agent == AgentId.HOME
        assert decision.rationale.startswith("LLM routing failed, using heuristic:")

    @pytest.mark.asyncio
    async def test_all_models_fail_falls_back_to_heuristic(self, registry, settings):
        router = _router(
            registry,
            settings,
            {
                "openai/gpt-5-nano": FakeLLMClient([RuntimeError("down")]),
                "openai/gpt-5-mini": FakeLLMClient([RuntimeError("down")]),
            },
        )
        decision = await router.route("xyzzy")
        assert decision.source == RoutingSource.FALLBACK
        assert decision.agent == AgentId.PERSONALITY
        assert decision.confidence == 0.5

    @pytest.mark.asyncio
    async def test_slow_exhaustion_still_logs_latency_overrun(self, registry, settings):
        """Running past the budget is reported even when every model fails."""

        async def slow_failure(**kwargs):
            await asyncio.sleep(0.03)
            return RuntimeError("down")

        router = _router(
            registry,
            settings,
            {
                "openai/gpt-5-nano": FakeLLMClient(responder=slow_failure),
                "openai/gpt-5-mini": FakeLLMClient(responder=slow_failure),
            },
        )
        with patch("switchboard.routing.llm_router.log") as log_mock:
            decision = await router.route("xyzzy", RoutingPolicy(max_llm_routing_latency_ms=10))

        assert decision.source == RoutingSource.FALLBACK
        warnings = [c.args[0] for c in log_mock.warning.call_args_list]
        assert "router.llm_latency_exceeded" in warnings
        overrun = next(
            c for c in log_mock.warning.call_args_list if c.args[0] == "router.llm_latency_exceeded"
        )
        assert overrun.kwargs["model"] is None
        assert overrun.kwargs["budget_ms"] == 10

    @pytest.mark.asyncio
    async def test_no_credentials_falls_back(self, registry, bare_settings):
        router = _router(registry, bare_settings, {})
        decision = await router.route("schedule a meeting tomorrow")
        assert decision.source == RoutingSource.FALLBACK
        assert decision.agent == AgentId.SECRETARY

    @pytest.mark.asyncio
    async def test_performance_context_from_metrics(self, registry, settings):
        sink = InMemoryTelemetrySink()
        await sink.insert(
            [
                TelemetryEvent(
                    event_type=TelemetryEventType.ROUTING_DECISION,
                    user_id="u1",
                    agent="coder",
                    success=True,
                    latency_ms=1200,
                )
            ]
        )
        router = _router(
            registry,
            settings,
            {"openai/gpt-5-nano": FakeLLMClient([_reply()])},
            metrics=MetricsAggregator(sink),
        )
        decision = await router.route("review this pull request")
        assert decision.performance_context["agent"] == "coder"
        assert decision.performance_context["total_requests"] == 1
