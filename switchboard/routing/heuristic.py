"""Heuristic router - keyword and phrase scoring against the registry.

This is the system's ultimate fallback: it is pure, synchronous, and never
raises, so every other router can degrade to it.

Scoring, per agent:
- multi-word keyword found as a phrase in the message: +3
- single-word keyword found as a word or substring:   +1

The strictly highest score wins (ties keep the first agent in registry
order). A best score of 0 routes to the default agent at confidence 0.5.
Otherwise:

    confidence = min(0.95, 0.5 + match_ratio * 0.3 + min(0.3, score * 0.05))
    match_ratio = matched_keywords / min(MATCH_RATIO_KEYWORD_CAP, total_keywords)

Explicit requests ("@coder ...", "ask the researcher to ...") bypass scoring
entirely and return confidence 0.99.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from switchboard.agent.registry import AgentId, CapabilityRegistry
from switchboard.routing.types import RoutingDecision, RoutingSource

# Tunable: caps the denominator of match_ratio so agents with long keyword
# lists are not penalised for breadth.
MATCH_RATIO_KEYWORD_CAP = 10
PHRASE_POINTS = 3
WORD_POINTS = 1
MAX_HEURISTIC_CONFIDENCE = 0.95
EXPLICIT_CONFIDENCE = 0.99
NO_MATCH_CONFIDENCE = 0.5
TOOL_PLAN_SIZE = 3

_AGENT_ALIASES: dict[AgentId, tuple[str, ...]] = {
    AgentId.CODER: ("coder", r"dev(?:bot)?", "developer"),
    AgentId.RESEARCHER: ("researcher", r"research(?:bot)?"),
    AgentId.SECRETARY: ("secretary", "secretarybot"),
    AgentId.HOME: (r"home(?:bot)?", r"smart\s*home"),
    AgentId.FINANCE: (r"finance(?:\s*(?:bot|advisor))?",),
    AgentId.IMAGEGEN: ("imagegen", r"image\s*gen(?:erator)?"),
    AgentId.PERSONALITY: ("personality", "q8"),
}

_MENTIONS: dict[AgentId, tuple[str, ...]] = {
    AgentId.PERSONALITY: ("personality", "q8"),
}


def _explicit_patterns() -> list[tuple[re.Pattern[str], AgentId]]:
    patterns: list[tuple[re.Pattern[str], AgentId]] = []
    for agent, aliases in _AGENT_ALIASES.items():
        alternation = "|".join(aliases)
        patterns.append(
            (
                re.compile(rf"\b(?:ask|have|let|get)\s+(?:the\s+)?(?:{alternation})\b", re.IGNORECASE),
                agent,
            )
        )
        for mention in _MENTIONS.get(agent, (agent.value,)):
            patterns.append((re.compile(rf"@{mention}\b", re.IGNORECASE), agent))
    return patterns


_EXPLICIT_PATTERNS = _explicit_patterns()


@dataclass(frozen=True)
class AgentScore:
    agent: AgentId
    score: int
    matched: tuple[str, ...]
    total_keywords: int


def score_agents(message: str, registry: CapabilityRegistry) -> list[AgentScore]:
    """Score every agent against a message, in registry order."""
    lowered = message.lower()
    words = set(lowered.split())
    scores: list[AgentScore] = []
    for descriptor in registry.list_agents():
        score = 0
        matched: list[str] = []
        for keyword in descriptor.keywords:
            if " " in keyword:
                if keyword in lowered:
                    score += PHRASE_POINTS
                    matched.append(keyword)
            elif keyword in words or keyword in lowered:
                score += WORD_POINTS
                matched.append(keyword)
        scores.append(
            AgentScore(
                agent=descriptor.id,
                score=score,
                matched=tuple(matched),
                total_keywords=len(descriptor.keywords),
            )
        )
    return scores


def best_match(message: str, registry: CapabilityRegistry) -> AgentScore | None:
    """Return the strictly highest-scoring agent, or None when nothing matched."""
    best: AgentScore | None = None
    for candidate in score_agents(message, registry):
        if candidate.score > (best.score if best else 0):
            best = candidate
    return best


def check_explicit_request(
    message: str,
    registry: CapabilityRegistry,
) -> RoutingDecision | None:
    """Detect a direct request for a specific agent."""
    for pattern, agent in _EXPLICIT_PATTERNS:
        if pattern.search(message):
            descriptor = registry.get(agent)
            default = registry.default_agent
            return RoutingDecision(
                agent=agent,
                confidence=EXPLICIT_CONFIDENCE,
                rationale=f"Explicit request for {descriptor.name}",
                source=RoutingSource.EXPLICIT,
                fallback_agent=default if agent != default else None,
                tool_plan=descriptor.tools[:TOOL_PLAN_SIZE],
            )
    return None


def heuristic_confidence(match: AgentScore) -> float:
    denominator = min(MATCH_RATIO_KEYWORD_CAP, match.total_keywords) or 1
    match_ratio = len(match.matched) / denominator
    return min(
        MAX_HEURISTIC_CONFIDENCE,
        0.5 + match_ratio * 0.3 + min(0.3, match.score * 0.05),
    )


def heuristic_route(message: str, registry: CapabilityRegistry) -> RoutingDecision:
    """Route a message by keyword scoring. Pure; never raises."""
    explicit = check_explicit_request(message, registry)
    if explicit is not None:
        return explicit

    match = best_match(message, registry)
    default = registry.default_agent
    if match is None:
        return RoutingDecision(
            agent=default,
            confidence=NO_MATCH_CONFIDENCE,
            rationale="No specific domain detected, using general assistant",
            source=RoutingSource.HEURISTIC,
        )

    descriptor = registry.get(match.agent)
    return RoutingDecision(
        agent=match.agent,
        confidence=heuristic_confidence(match),
        rationale=f"Matched {descriptor.name} on: {', '.join(match.matched[:5])}",
        source=RoutingSource.HEURISTIC,
        fallback_agent=default if match.agent != default else None,
        tool_plan=descriptor.tools[:TOOL_PLAN_SIZE],
        performance_context={"score": match.score, "matched_keywords": list(match.matched)},
    )
