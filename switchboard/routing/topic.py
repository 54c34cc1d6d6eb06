"""Topic tracker - per-conversation continuity bias.

The tracker remembers, per thread, which agent handled the last turn and a
short topic label. For a new message it decides whether the user changed
subject (TopicSwitch) and the unified router uses that to keep a
conversation with the same specialist unless the message clearly belongs
elsewhere.

Switch rules:
- the heuristic router picks a non-default agent other than the last agent
  with confidence >= SWITCH_CONFIDENCE, or
- the message explicitly names another agent.

Otherwise the last agent is suggested, with confidence growing by 0.05 per
consecutive turn from 0.6 up to 0.9. Context older than CONTEXT_TTL is
ignored.

State is last-writer-wins; concurrent turns on one thread may overwrite
each other, which only costs a little continuity.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from datetime import UTC, datetime, timedelta

import structlog

from switchboard.agent.registry import AgentId, CapabilityRegistry
from switchboard.routing.heuristic import check_explicit_request, heuristic_route
from switchboard.routing.types import RoutingDecision, TopicContext, TopicSwitch

log = structlog.get_logger(__name__)

CONTEXT_TTL = timedelta(minutes=30)
SWITCH_CONFIDENCE = 0.6
CONTINUITY_BASE = 0.6
CONTINUITY_STEP = 0.05
CONTINUITY_MAX = 0.9
CONTINUITY_BOOST = 0.05
CONTINUITY_BOOST_CAP = 0.98
GENERAL_TOPIC = "general"


def topic_label(decision: RoutingDecision) -> str:
    """Short topic label: the top matched keyword, or "general"."""
    context = decision.performance_context or {}
    matched = context.get("matched_keywords") or []
    return str(matched[0]) if matched else GENERAL_TOPIC


def apply_topic_bias(decision: RoutingDecision, switch: TopicSwitch | None) -> RoutingDecision:
    """Adjust a routing decision for conversation continuity.

    Same agent as the previous turn on a continuing topic gets +0.05
    (capped at 0.98). A detected switch only annotates the rationale.
    """
    if switch is None:
        return decision
    if switch.is_switch:
        return decision.with_changes(rationale=f"{decision.rationale} (topic change: {switch.reason})")
    if decision.agent == switch.suggested_agent and switch.confidence > 0:
        boosted = decision.confidence
        if boosted < CONTINUITY_BOOST_CAP:
            boosted = min(CONTINUITY_BOOST_CAP, boosted + CONTINUITY_BOOST)
        return decision.with_changes(
            confidence=boosted,
            rationale=f"{decision.rationale} (continuity boost)",
        )
    return decision


class TopicTracker:
    """In-process per-thread topic memory, bounded to max_threads entries."""

    def __init__(self, registry: CapabilityRegistry, max_threads: int = 10_000) -> None:
        self._registry = registry
        self._contexts: OrderedDict[str, TopicContext] = OrderedDict()
        self._max_threads = max_threads
        self._lock = asyncio.Lock()

    def get_context(self, thread_id: str) -> TopicContext | None:
        context = self._contexts.get(thread_id)
        if context is None:
            return None
        if datetime.now(UTC) - context.updated_at > CONTEXT_TTL:
            return None
        return context

    def detect_switch(self, thread_id: str | None, message: str) -> TopicSwitch | None:
        """Classify a new message against the thread's tracked topic.

        Returns None when the thread has no (fresh) context, which callers
        treat as "no bias".
        """
        if not thread_id:
            return None
        context = self.get_context(thread_id)
        if context is None:
            return None

        default = self._registry.default_agent
        explicit = check_explicit_request(message, self._registry)
        if explicit is not None and explicit.agent != context.last_agent:
            return TopicSwitch(
                is_switch=True,
                suggested_agent=explicit.agent,
                confidence=explicit.confidence,
                reason=f"explicit request for {explicit.agent.value}",
            )

        heuristic = heuristic_route(message, self._registry)
        if (
            heuristic.agent != default
            and heuristic.agent != context.last_agent
            and heuristic.confidence >= SWITCH_CONFIDENCE
        ):
            return TopicSwitch(
                is_switch=True,
                suggested_agent=heuristic.agent,
                confidence=heuristic.confidence,
                reason=f"{context.current_topic} -> {topic_label(heuristic)}",
            )

        confidence = min(CONTINUITY_MAX, CONTINUITY_BASE + CONTINUITY_STEP * (context.turns - 1))
        return TopicSwitch(
            is_switch=False,
            suggested_agent=context.last_agent,
            confidence=confidence,
            reason=f"continuing {context.current_topic} with {context.last_agent.value}",
        )

    async def update(self, thread_id: str, agent: AgentId, decision: RoutingDecision) -> None:
        """Record the agent that handled a turn."""
        async with self._lock:
            previous = self.get_context(thread_id)
            turns = previous.turns + 1 if previous and previous.last_agent == agent else 1
            label = topic_label(decision)
            if label == GENERAL_TOPIC and previous and previous.last_agent == agent:
                label = previous.current_topic
            self._contexts[thread_id] = TopicContext(
                thread_id=thread_id,
                last_agent=agent,
                current_topic=label,
                turns=turns,
            )
            self._contexts.move_to_end(thread_id)
            while len(self._contexts) > self._max_threads:
                self._contexts.popitem(last=False)
        log.debug("topic.updated", thread_id=thread_id, agent=agent.value, topic=label, turns=turns)

    def forget(self, thread_id: str) -> None:
        self._contexts.pop(thread_id, None)
