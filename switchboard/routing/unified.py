"""Unified router - the single entry point for agent selection.

Stages, in order:

1. Heuristic only, when forced or when no LLM credentials are configured.
2. Topic continuity: a continuing conversation with a non-default agent
   stays with it unless the heuristic router confidently disagrees.
3. Semantic fast path (optional), under its own short deadline.
4. LLM classification under a deadline; on timeout the heuristic decision
   is used with source=fallback.
5. Low-confidence LLM decisions are cross-checked against the heuristic.
6. Topic bias is applied to whatever decision survives.

Routing never raises: every failure degrades to a lower-confidence
heuristic decision.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from switchboard.agent.registry import CapabilityRegistry
from switchboard.routing.heuristic import heuristic_route
from switchboard.routing.llm_router import LLMRouter
from switchboard.routing.semantic import SemanticRouter
from switchboard.routing.topic import TopicTracker, apply_topic_bias
from switchboard.routing.types import (
    DEFAULT_ROUTING_POLICY,
    RoutingDecision,
    RoutingPolicy,
    RoutingSource,
    TopicSwitch,
)

log = structlog.get_logger(__name__)

TOPIC_SUGGESTION_MIN_CONFIDENCE = 0.6
TOPIC_OVERRIDE_HEURISTIC_CONFIDENCE = 0.7
TOPIC_CONTINUITY_BONUS = 0.1
TOPIC_CONTINUITY_CAP = 0.95
HEURISTIC_AGREEMENT_BONUS = 0.15
LLM_VERY_LOW_CONFIDENCE = 0.5


@dataclass(frozen=True)
class RouteOptions:
    """Per-call routing knobs."""

    force_heuristic: bool = False
    llm_timeout_ms: int = 1000
    semantic_timeout_ms: int = 500
    semantic_min_confidence: float = 0.7


class UnifiedRouter:
    """Combines heuristic, semantic, LLM and topic signals into one decision."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        llm_router: LLMRouter | None = None,
        semantic_router: SemanticRouter | None = None,
        topic_tracker: TopicTracker | None = None,
        policy: RoutingPolicy = DEFAULT_ROUTING_POLICY,
        options: RouteOptions | None = None,
    ) -> None:
        self._registry = registry
        self._llm_router = llm_router
        self._semantic_router = semantic_router
        self._topic_tracker = topic_tracker
        self._policy = policy
        self._options = options or RouteOptions()

    @property
    def topic_tracker(self) -> TopicTracker | None:
        return self._topic_tracker

    async def warm(self) -> None:
        """Prepare the semantic fast path outside any per-request deadline.

        Failures are logged; routing falls back to building lazily.
        """
        if self._semantic_router is None:
            return
        try:
            await self._semantic_router.warm()
        except Exception as exc:
            log.warning("router.semantic_warm_failed", error=str(exc))

    def _detect_switch(self, thread_id: str | None, message: str) -> TopicSwitch | None:
        if self._topic_tracker is None:
            return None
        try:
            return self._topic_tracker.detect_switch(thread_id, message)
        except Exception as exc:
            log.warning("router.topic_detection_failed", thread_id=thread_id, error=str(exc))
            return None

    async def route(
        self,
        message: str,
        *,
        thread_id: str | None = None,
        options: RouteOptions | None = None,
    ) -> RoutingDecision:
        opts = options or self._options
        switch = self._detect_switch(thread_id, message)

        decision = await self._select(message, switch, opts)
        if decision.source == RoutingSource.EXPLICIT:
            biased = decision
        else:
            biased = apply_topic_bias(decision, switch)

        log.info(
            "router.decision",
            agent=biased.agent.value,
            confidence=round(biased.confidence, 3),
            source=biased.source.value,
            topic_switch=switch.is_switch if switch else None,
        )
        return biased

    async def _select(
        self,
        message: str,
        switch: TopicSwitch | None,
        opts: RouteOptions,
    ) -> RoutingDecision:
        heuristic = heuristic_route(message, self._registry)

        # An explicit "@agent" request always wins
        if heuristic.source == RoutingSource.EXPLICIT:
            return heuristic

        if opts.force_heuristic or self._llm_router is None:
            return heuristic

        topic_decision = self._topic_continuity(switch, heuristic)
        if topic_decision is not None:
            return topic_decision

        semantic = await self._semantic(message, opts)
        if semantic is not None:
            return semantic

        try:
            llm = await asyncio.wait_for(
                self._llm_router.route(message, self._policy),
                timeout=opts.llm_timeout_ms / 1000,
            )
        except TimeoutError:
            log.warning("router.llm_timeout", timeout_ms=opts.llm_timeout_ms)
            return heuristic.with_changes(
                source=RoutingSource.FALLBACK,
                rationale=f"LLM routing timed out, using heuristic: {heuristic.rationale}",
            )

        if llm.source != RoutingSource.LLM or llm.confidence >= self._policy.min_llm_confidence:
            return llm

        if heuristic.agent == llm.agent:
            return llm.with_changes(
                confidence=min(1.0, llm.confidence + HEURISTIC_AGREEMENT_BONUS),
                rationale=f"{llm.rationale} (confirmed by heuristic)",
            )
        if llm.confidence < LLM_VERY_LOW_CONFIDENCE:
            return heuristic.with_changes(
                source=RoutingSource.FALLBACK,
                rationale=(
                    f"LLM confidence too low ({llm.confidence:.2f}), "
                    f"using heuristic: {heuristic.rationale}"
                ),
            )
        return llm

    def _topic_continuity(
        self,
        switch: TopicSwitch | None,
        heuristic: RoutingDecision,
    ) -> RoutingDecision | None:
        if switch is None or switch.is_switch:
            return None
        if switch.suggested_agent == self._registry.default_agent:
            return None
        if switch.confidence < TOPIC_SUGGESTION_MIN_CONFIDENCE:
            return None

        agrees = heuristic.agent == switch.suggested_agent
        if not agrees and heuristic.confidence >= TOPIC_OVERRIDE_HEURISTIC_CONFIDENCE:
            return None

        descriptor = self._registry.get(switch.suggested_agent)
        return RoutingDecision(
            agent=switch.suggested_agent,
            confidence=min(TOPIC_CONTINUITY_CAP, switch.confidence + TOPIC_CONTINUITY_BONUS),
            rationale=f"Topic continuity: {switch.reason}",
            source=RoutingSource.HEURISTIC,
            fallback_agent=None if agrees else heuristic.agent,
            tool_plan=descriptor.tools[:3],
        )

    async def _semantic(self, message: str, opts: RouteOptions) -> RoutingDecision | None:
        if self._semantic_router is None:
            return None
        try:
            decision = await asyncio.wait_for(
                self._semantic_router.route(message),
                timeout=opts.semantic_timeout_ms / 1000,
            )
        except TimeoutError:
            log.debug("router.semantic_timeout", timeout_ms=opts.semantic_timeout_ms)
            return None
        except Exception as exc:
            log.warning("router.semantic_failed", error=str(exc))
            return None
        if decision is None or decision.confidence < opts.semantic_min_confidence:
            return None
        return decision
