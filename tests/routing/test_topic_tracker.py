"""Tests for conversation topic continuity."""

from datetime import UTC, datetime, timedelta

import pytest

from switchboard.agent.registry import AgentId
from switchboard.routing.heuristic import heuristic_route
from switchboard.routing.topic import (
    CONTINUITY_BOOST_CAP,
    TopicTracker,
    apply_topic_bias,
    topic_label,
)
from switchboard.routing.types import RoutingDecision, RoutingSource, TopicSwitch


def _decision(agent=AgentId.CODER, confidence=0.76, **kwargs) -> RoutingDecision:
    return RoutingDecision(
        agent=agent,
        confidence=confidence,
        rationale="because",
        source=RoutingSource.HEURISTIC,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# apply_topic_bias
# ---------------------------------------------------------------------------


class TestApplyTopicBias:
    def test_no_switch_info_is_identity(self):
        decision = _decision()
        assert apply_topic_bias(decision, None) is decision

    def test_continuity_boost(self):
        switch = TopicSwitch(False, AgentId.CODER, 0.6, "continuing")
        biased = apply_topic_bias(_decision(confidence=0.76), switch)
        assert biased.confidence == pytest.approx(0.81)
        assert biased.rationale == "because (continuity boost)"

    def test_boost_is_capped(self):
        switch = TopicSwitch(False, AgentId.CODER, 0.9, "continuing")
        assert apply_topic_bias(_decision(confidence=0.96), switch).confidence == CONTINUITY_BOOST_CAP

    def test_confidence_above_cap_is_not_lowered(self):
        switch = TopicSwitch(False, AgentId.CODER, 0.9, "continuing")
        assert apply_topic_bias(_decision(confidence=0.99), switch).confidence == 0.99

    def test_different_agent_is_unchanged(self):
        switch = TopicSwitch(False, AgentId.HOME, 0.6, "continuing")
        decision = _decision()
        assert apply_topic_bias(decision, switch) == decision

    def test_switch_annotates_rationale(self):
        switch = TopicSwitch(True, AgentId.HOME, 0.76, "bug -> light")
        biased = apply_topic_bias(_decision(), switch)
        assert biased.confidence == 0.76
        assert biased.rationale == "because (topic change: bug -> light)"


def test_topic_label_uses_first_matched_keyword(registry):
    assert topic_label(heuristic_route("turn on the living room lights", registry)) == "light"
    assert topic_label(_decision()) == "general"


# ---------------------------------------------------------------------------
# TopicTracker
# ---------------------------------------------------------------------------


class TestTopicTracker:
    """Per-thread memory and switch detection."""

    @pytest.mark.asyncio
    async def test_unknown_thread_has_no_bias(self, registry):
        tracker = TopicTracker(registry)
        assert tracker.detect_switch("t1", "hello") is None
        assert tracker.detect_switch(None, "hello") is None

    @pytest.mark.asyncio
    async def test_continuity_grows_with_turns(self, registry):
        tracker = TopicTracker(registry)
        decision = heuristic_route("debug this function", registry)
        await tracker.update("t1", AgentId.CODER, decision)

        first = tracker.detect_switch("t1", "and what about that one?")
        assert first.is_switch is False
        assert first.suggested_agent == AgentId.CODER
        assert first.confidence == pytest.approx(0.6)

        await tracker.update("t1", AgentId.CODER, decision)
        second = tracker.detect_switch("t1", "and what about that one?")
        assert second.confidence == pytest.approx(0.65)
        assert tracker.get_context("t1").turns == 2

    @pytest.mark.asyncio
    async def test_continuity_is_capped(self, registry):
        tracker = TopicTracker(registry)
        decision = heuristic_route("debug this function", registry)
        for _ in range(20):
            await tracker.update("t1", AgentId.CODER, decision)
        assert tracker.detect_switch("t1", "ok").confidence == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_confident_other_domain_is_a_switch(self, registry):
        tracker = TopicTracker(registry)
        await tracker.update("t1", AgentId.CODER, heuristic_route("debug this function", registry))

        switch = tracker.detect_switch("t1", "turn on the living room lights")

        assert switch.is_switch is True
        assert switch.suggested_agent == AgentId.HOME
        assert switch.reason == "bug -> light"

    @pytest.mark.asyncio
    async def test_explicit_request_is_a_switch(self, registry):
        tracker = TopicTracker(registry)
        await tracker.update("t1", AgentId.CODER, _decision())
        switch = tracker.detect_switch("t1", "@finance what do you think")
        assert switch.is_switch is True
        assert switch.suggested_agent == AgentId.FINANCE
        assert switch.confidence == 0.99

    @pytest.mark.asyncio
    async def test_agent_change_resets_turns(self, registry):
        tracker = TopicTracker(registry)
        await tracker.update("t1", AgentId.CODER, _decision())
        await tracker.update("t1", AgentId.CODER, _decision())
        await tracker.update("t1", AgentId.HOME, _decision(agent=AgentId.HOME))
        context = tracker.get_context("t1")
        assert context.last_agent == AgentId.HOME
        assert context.turns == 1

    @pytest.mark.asyncio
    async def test_stale_context_is_ignored(self, registry):
        tracker = TopicTracker(registry)
        await tracker.update("t1", AgentId.CODER, _decision())
        tracker._contexts["t1"].updated_at = datetime.now(UTC) - timedelta(minutes=31)
        assert tracker.get_context("t1") is None
        assert tracker.detect_switch("t1", "more") is None

    @pytest.mark.asyncio
    async def test_bounded_thread_count(self, registry):
        tracker = TopicTracker(registry, max_threads=2)
        for thread in ("a", "b", "c"):
            await tracker.update(thread, AgentId.CODER, _decision())
        assert tracker.get_context("a") is None
        assert tracker.get_context("c") is not None

    @pytest.mark.asyncio
    async def test_forget(self, registry):
        tracker = TopicTracker(registry)
        await tracker.update("t1", AgentId.CODER, _decision())
        tracker.forget("t1")
        assert tracker.get_context("t1") is None
