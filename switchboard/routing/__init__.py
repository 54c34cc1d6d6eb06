"""Agent routing.

Public API:
    RoutingDecision, RoutingPolicy, RoutingSource  - decision data model
    heuristic_route, check_explicit_request        - keyword router (never fails)
    TopicTracker, apply_topic_bias                 - conversation continuity
    SemanticRouter, EmbeddingSemanticRouter        - embedding fast path

The service-backed routers live in their own modules and are imported from
there: switchboard.routing.llm_router.LLMRouter and
switchboard.routing.unified.UnifiedRouter.
"""

from __future__ import annotations

from switchboard.routing.heuristic import (
    MATCH_RATIO_KEYWORD_CAP,
    check_explicit_request,
    heuristic_route,
    score_agents,
)
from switchboard.routing.semantic import EmbeddingSemanticRouter, SemanticRouter
from switchboard.routing.topic import TopicTracker, apply_topic_bias
from switchboard.routing.types import (
    DEFAULT_ROUTING_POLICY,
    RoutingDecision,
    RoutingPolicy,
    RoutingSource,
    TopicContext,
    TopicSwitch,
)

__all__ = [
    "DEFAULT_ROUTING_POLICY",
    "EmbeddingSemanticRouter",
    "MATCH_RATIO_KEYWORD_CAP",
    "RoutingDecision",
    "RoutingPolicy",
    "RoutingSource",
    "SemanticRouter",
    "TopicContext",
    "TopicSwitch",
    "TopicTracker",
    "apply_topic_bias",
    "check_explicit_request",
    "heuristic_route",
    "score_agents",
]
