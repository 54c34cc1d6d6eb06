"""Tests for speculative parallel execution."""

import asyncio

import pytest

from fakes import FakeLLMClient, client_factory
from switchboard.agent.model_router.chain import ModelCatalog
from switchboard.agent.model_router.fallback import ModelFallbackExecutor
from switchboard.agent.registry import AgentId
from switchboard.execution.speculative import (
    NO_RESULT_RESPONSE,
    SpeculativeConfig,
    SpeculativeExecutor,
    candidates_from_decision,
    should_use_speculative,
)
from switchboard.routing.heuristic import heuristic_route
from switchboard.routing.types import RoutingDecision, RoutingSource

GOOD_ANSWER = (
    "Your function fails because the loop index runs one past the end of the list, "
    "so change the range bound and the error goes away for every input you showed."
)
OTHER_GOOD_ANSWER = (
    "The loop index runs one past the end of the list in your function, "
    "which raises the error; change the range bound and it goes away."
)
WEAK_ANSWER = "I don't know"


def _executor(registry, settings, replies, **config) -> SpeculativeExecutor:
    """replies maps agent -> reply text, exception, or awaitable."""
    prompts = {registry.get(agent).system_prompt: reply for agent, reply in replies.items()}

    def responder(**kwargs):
        reply = prompts[kwargs["messages"][0]["content"]]
        return reply() if callable(reply) else reply

    fallback = ModelFallbackExecutor(
        client_factory({}, default=FakeLLMClient(responder=responder)),
        rate_limit_delay_s=0,
    )
    return SpeculativeExecutor(
        registry,
        ModelCatalog(settings),
        fallback,
        SpeculativeConfig(**config),
    )


def _decision(agent, confidence, source=RoutingSource.LLM, fallback=None) -> RoutingDecision:
    return RoutingDecision(agent, confidence, "r", source, fallback_agent=fallback)


class TestShouldUseSpeculative:
    def test_ambiguous_confidence(self):
        assert should_use_speculative(_decision(AgentId.CODER, 0.6)) is True

    def test_confident_llm_decision(self):
        assert should_use_speculative(_decision(AgentId.CODER, 0.9)) is False

    def test_distinct_fallback(self):
        assert should_use_speculative(_decision(AgentId.CODER, 0.9, fallback=AgentId.HOME)) is True

    def test_heuristic_source(self):
        assert should_use_speculative(_decision(AgentId.CODER, 0.95, RoutingSource.HEURISTIC)) is True


def test_candidates_start_with_routed_agent_and_end_with_fallback(registry):
    decision = heuristic_route("turn on the living room lights", registry)
    candidates = candidates_from_decision(decision, "turn on the living room lights", registry, 0.3)
    assert candidates[0] == (AgentId.HOME, decision.confidence)
    assert candidates[-1] == (AgentId.PERSONALITY, 0.3)
    assert len({agent for agent, _ in candidates}) == len(candidates)


def test_select_agents_filters_sorts_and_caps(registry, settings):
    executor = _executor(registry, settings, {}, max_parallel_agents=2, min_confidence_to_run=0.3)
    selected = executor.select_agents(
        [(AgentId.HOME, 0.5), (AgentId.CODER, 0.8), (AgentId.FINANCE, 0.2), (AgentId.RESEARCHER, 0.6)]
    )
    assert selected == [AgentId.CODER, AgentId.RESEARCHER]


@pytest.mark.parametrize("bad", [{"max_parallel_agents": 0}, {"timeout_ms": 0}])
def test_config_validation(bad):
    with pytest.raises(ValueError):
        SpeculativeConfig(**bad)


class TestSpeculativeExecutor:
    """Concurrent candidates, deadline and winner selection."""

    @pytest.mark.asyncio
    async def test_best_qualifying_answer_wins_and_timeouts_score_zero(self, registry, settings):
        executor = _executor(
            registry,
            settings,
            {
                AgentId.CODER: GOOD_ANSWER,
                AgentId.PERSONALITY: WEAK_ANSWER,
                AgentId.RESEARCHER: lambda: asyncio.sleep(5, result="too late"),
            },
            timeout_ms=200,
        )

        outcome = await executor.execute(
            [AgentId.CODER, AgentId.PERSONALITY, AgentId.RESEARCHER],
            "why does my function fail on the list",
        )

        assert outcome.best.agent == AgentId.CODER
        assert outcome.best.success is True
        assert outcome.best.confidence == outcome.best.quality
        by_agent = {r.agent: r for r in outcome.results}
        assert by_agent[AgentId.RESEARCHER].success is False
        assert by_agent[AgentId.RESEARCHER].quality == 0.0
        assert by_agent[AgentId.RESEARCHER].error == "Timed out after 200ms"
        assert by_agent[AgentId.PERSONALITY].quality < 0.7
        # Only one candidate qualified, so nothing to cross-validate
        assert outcome.cross_validated is False

    @pytest.mark.asyncio
    async def test_agreeing_answers_are_cross_validated(self, registry, settings):
        executor = _executor(
            registry,
            settings,
            {AgentId.CODER: GOOD_ANSWER, AgentId.PERSONALITY: GOOD_ANSWER},
        )
        outcome = await executor.execute([AgentId.CODER, AgentId.PERSONALITY], "why does my function fail")
        assert outcome.consensus_score == 1.0
        assert outcome.cross_validated is True

    @pytest.mark.asyncio
    async def test_cross_validation_can_be_disabled(self, registry, settings):
        executor = _executor(
            registry,
            settings,
            {AgentId.CODER: GOOD_ANSWER, AgentId.PERSONALITY: OTHER_GOOD_ANSWER},
            enable_cross_validation=False,
        )
        outcome = await executor.execute([AgentId.CODER, AgentId.PERSONALITY], "why does my function fail")
        assert outcome.cross_validated is False
        assert 0.0 < outcome.consensus_score < 1.0

    @pytest.mark.asyncio
    async def test_below_threshold_returns_best_attempt(self, registry, settings):
        executor = _executor(
            registry,
            settings,
            {AgentId.CODER: WEAK_ANSWER, AgentId.HOME: "Lights are on now."},
        )
        outcome = await executor.execute([AgentId.CODER, AgentId.HOME], "lights please")
        assert outcome.best.agent == AgentId.HOME
        assert outcome.consensus_score == 0.0

    @pytest.mark.asyncio
    async def test_failed_candidate_is_recorded(self, registry, settings):
        executor = _executor(
            registry,
            settings,
            {AgentId.CODER: RuntimeError("provider exploded"), AgentId.HOME: GOOD_ANSWER},
        )
        outcome = await executor.execute([AgentId.CODER, AgentId.HOME], "fix it")
        failed = next(r for r in outcome.results if r.agent == AgentId.CODER)
        assert failed.success is False
        assert "provider exploded" in failed.error
        assert outcome.best.agent == AgentId.HOME

    @pytest.mark.asyncio
    async def test_no_agents_returns_apology(self, registry, settings):
        outcome = await _executor(registry, settings, {}).execute([], "hello")
        assert outcome.best.agent == registry.default_agent
        assert outcome.best.response == NO_RESULT_RESPONSE
        assert outcome.best.success is False
