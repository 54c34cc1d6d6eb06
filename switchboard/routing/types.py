"""Routing data model shared by every router."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from switchboard.agent.registry import AgentId


class RoutingSource(StrEnum):
    """Which stage produced a decision.

    FALLBACK means the heuristic router was the final resolver after a
    higher-tier router (LLM, semantic) failed, timed out, or was overruled.
    """

    LLM = "llm"
    HEURISTIC = "heuristic"
    FALLBACK = "fallback"
    EXPLICIT = "explicit"


def clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class RoutingDecision:
    """Selected agent for one message, with confidence and rationale."""

    agent: AgentId
    confidence: float
    rationale: str
    source: RoutingSource
    fallback_agent: AgentId | None = None
    tool_plan: tuple[str, ...] = ()
    performance_context: dict[str, Any] | None = None
    cached: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    def with_changes(self, **changes: Any) -> RoutingDecision:
        """Return a copy with fields replaced; confidence is clamped."""
        if "confidence" in changes:
            changes["confidence"] = clamp_confidence(changes["confidence"])
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "agent": self.agent.value,
            "confidence": round(self.confidence, 4),
            "rationale": self.rationale,
            "source": self.source.value,
        }
        if self.fallback_agent is not None:
            payload["fallback_agent"] = self.fallback_agent.value
        if self.tool_plan:
            payload["tool_plan"] = list(self.tool_plan)
        if self.performance_context:
            payload["performance_context"] = self.performance_context
        if self.cached:
            payload["cached"] = True
        return payload


@dataclass(frozen=True)
class RoutingPolicy:
    """Global routing weights and LLM thresholds.

    Weights need not sum to 1; priority is task success > latency > cost.
    """

    success_weight: float = 0.6
    latency_weight: float = 0.25
    cost_weight: float = 0.15
    min_llm_confidence: float = 0.7
    max_llm_routing_latency_ms: int = 500

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_weight": self.success_weight,
            "latency_weight": self.latency_weight,
            "cost_weight": self.cost_weight,
            "min_llm_confidence": self.min_llm_confidence,
            "max_llm_routing_latency_ms": self.max_llm_routing_latency_ms,
        }


DEFAULT_ROUTING_POLICY = RoutingPolicy()


@dataclass
class TopicContext:
    """Per-conversation routing memory, replaced after every turn."""

    thread_id: str
    last_agent: AgentId
    current_topic: str = "general"
    turns: int = 1
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class TopicSwitch:
    """Derived judgement on whether a message continues the previous topic."""

    is_switch: bool
    suggested_agent: AgentId
    confidence: float
    reason: str
