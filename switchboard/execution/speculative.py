"""Speculative parallel execution.

When routing is ambiguous the same message is sent to several candidate
agents at once and the best answer is kept. Every candidate call runs
through the agent's model chain (with rate-limit fallback) and is bounded
by a single deadline; a timed-out or failed candidate scores zero.

Winner selection, among candidates at or above the quality threshold:

    0.6 * quality + 0.3 * (1 - latency / timeout) + 0.1 * confidence

If no candidate reaches the threshold, the highest-quality attempt is
returned anyway, so a round with at least one candidate never comes back
empty.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from switchboard.agent.llm import LLMClient
from switchboard.agent.model_router.chain import ModelCatalog, ModelConfig
from switchboard.agent.model_router.fallback import ModelFallbackExecutor
from switchboard.agent.registry import AgentId, CapabilityRegistry
from switchboard.execution.quality import calculate_consensus, score_response_quality
from switchboard.routing.heuristic import heuristic_confidence, score_agents
from switchboard.routing.types import RoutingDecision, RoutingSource

log = structlog.get_logger(__name__)

HISTORY_WINDOW = 6
CANDIDATE_MAX_TOKENS = 1000
CANDIDATE_TEMPERATURE = 0.7
AMBIGUOUS_CONFIDENCE_RANGE = (0.4, 0.8)
NO_RESULT_RESPONSE = "I apologize, but I encountered an issue processing your request."


@dataclass(frozen=True)
class SpeculativeConfig:
    """Knobs for one speculative round."""

    max_parallel_agents: int = 3
    timeout_ms: int = 15_000
    min_confidence_to_run: float = 0.3
    quality_threshold: float = 0.7
    enable_cross_validation: bool = True

    def __post_init__(self) -> None:
        if self.max_parallel_agents < 1:
            raise ValueError("max_parallel_agents must be at least 1")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")


@dataclass(frozen=True)
class SpeculativeResult:
    """Outcome of one candidate agent's attempt."""

    agent: AgentId
    response: str
    latency_ms: float
    confidence: float
    quality: float
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent.value,
            "latency_ms": round(self.latency_ms),
            "confidence": round(self.confidence, 3),
            "quality": round(self.quality, 3),
            "success": self.success,
            "error": self.error,
        }


@dataclass(frozen=True)
class SpeculativeOutcome:
    """Winner of a speculative round plus every attempt."""

    best: SpeculativeResult
    results: tuple[SpeculativeResult, ...] = field(default_factory=tuple)
    cross_validated: bool = False
    consensus_score: float = 0.0


def should_use_speculative(decision: RoutingDecision) -> bool:
    """True when a routing decision is ambiguous enough to race candidates."""
    low, high = AMBIGUOUS_CONFIDENCE_RANGE
    if low <= decision.confidence <= high:
        return True
    if decision.fallback_agent is not None and decision.fallback_agent != decision.agent:
        return True
    return decision.source == RoutingSource.HEURISTIC


def candidates_from_decision(
    decision: RoutingDecision,
    message: str,
    registry: CapabilityRegistry,
    floor: float,
) -> list[tuple[AgentId, float]]:
    """Candidate agents for a round: the routed agent, heuristic runners-up, then the fallback."""
    candidates: dict[AgentId, float] = {decision.agent: decision.confidence}
    for score in score_agents(message, registry):
        if score.score > 0 and score.agent not in candidates:
            candidates[score.agent] = heuristic_confidence(score)
    if decision.fallback_agent is not None and decision.fallback_agent not in candidates:
        candidates[decision.fallback_agent] = floor
    return list(candidates.items())


class SpeculativeExecutor:
    """Runs candidate agents concurrently and picks the best response."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        catalog: ModelCatalog,
        fallback_executor: ModelFallbackExecutor,
        config: SpeculativeConfig | None = None,
    ) -> None:
        self._registry = registry
        self._catalog = catalog
        self._fallback = fallback_executor
        self._config = config or SpeculativeConfig()

    @property
    def config(self) -> SpeculativeConfig:
        return self._config

    def select_agents(self, candidates: Sequence[tuple[AgentId, float]]) -> list[AgentId]:
        """Eligible candidates, highest confidence first, capped at max_parallel_agents."""
        eligible = [c for c in candidates if c[1] >= self._config.min_confidence_to_run]
        eligible.sort(key=lambda c: c[1], reverse=True)
        return [agent for agent, _ in eligible[: self._config.max_parallel_agents]]

    async def _query_agent(
        self,
        agent: AgentId,
        message: str,
        history: Sequence[dict[str, Any]],
    ) -> SpeculativeResult:
        descriptor = self._registry.get(agent)
        messages = [
            {"role": "system", "content": descriptor.system_prompt},
            *history[-HISTORY_WINDOW:],
            {"role": "user", "content": message},
        ]

        async def work(client: LLMClient, config: ModelConfig) -> str:
            completion = await client.complete(
                messages=messages,
                model=config.litellm_model,
                temperature=CANDIDATE_TEMPERATURE,
                max_tokens=CANDIDATE_MAX_TOKENS,
            )
            return completion.content

        started = time.perf_counter()
        try:
            outcome = await asyncio.wait_for(
                self._fallback.execute(
                    self._catalog.chain_for(agent), work, context=f"speculative:{agent.value}"
                ),
                timeout=self._config.timeout_ms / 1000,
            )
        except TimeoutError:
            error = f"Timed out after {self._config.timeout_ms}ms"
        except Exception as exc:
            error = str(exc) or type(exc).__name__
        else:
            content = outcome.result
            quality = score_response_quality(content, message, descriptor)
            return SpeculativeResult(
                agent=agent,
                response=content,
                latency_ms=(time.perf_counter() - started) * 1000,
                confidence=quality,
                quality=quality,
                success=True,
            )

        log.warning("speculative.candidate_failed", agent=agent.value, error=error)
        return SpeculativeResult(
            agent=agent,
            response="",
            latency_ms=(time.perf_counter() - started) * 1000,
            confidence=0.0,
            quality=0.0,
            success=False,
            error=error,
        )

    def _rank(self, result: SpeculativeResult) -> float:
        latency_score = 1 - result.latency_ms / self._config.timeout_ms
        return result.quality * 0.6 + latency_score * 0.3 + result.confidence * 0.1

    async def execute(
        self,
        agents: Sequence[AgentId],
        message: str,
        history: Sequence[dict[str, Any]] = (),
    ) -> SpeculativeOutcome:
        """Query every agent concurrently and choose a winner."""
        if not agents:
            default = self._registry.default_agent
            empty = SpeculativeResult(
                agent=default,
                response=NO_RESULT_RESPONSE,
                latency_ms=0.0,
                confidence=0.0,
                quality=0.0,
                success=False,
            )
            return SpeculativeOutcome(best=empty, results=(empty,))

        log.info("speculative.started", agents=[a.value for a in agents], message=message[:50])
        results = tuple(
            await asyncio.gather(*(self._query_agent(agent, message, history) for agent in agents))
        )

        qualifying = [
            r for r in results if r.success and r.quality >= self._config.quality_threshold
        ]
        if not qualifying:
            best_attempt = max(results, key=lambda r: r.quality)
            log.info(
                "speculative.below_threshold",
                agent=best_attempt.agent.value,
                quality=round(best_attempt.quality, 3),
            )
            return SpeculativeOutcome(best=best_attempt, results=results)

        consensus = calculate_consensus([r.response for r in qualifying])
        best = max(qualifying, key=self._rank)
        cross_validated = (
            self._config.enable_cross_validation and len(qualifying) > 1 and consensus > 0.5
        )
        log.info(
            "speculative.completed",
            agent=best.agent.value,
            quality=round(best.quality, 3),
            latency_ms=round(best.latency_ms),
            consensus=round(consensus, 3),
            cross_validated=cross_validated,
        )
        return SpeculativeOutcome(
            best=best,
            results=results,
            cross_validated=cross_validated,
            consensus_score=consensus,
        )
