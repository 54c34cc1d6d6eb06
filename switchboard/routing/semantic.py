"""Semantic router - optional embedding-similarity fast path.

EmbeddingSemanticRouter embeds a handful of reference utterances per agent
once (on warm() or the first route) and routes a message to the agent whose
closest utterance has the highest cosine similarity. The similarity itself
is the decision's confidence.

The unified router calls this under a short deadline and only accepts the
result above a confidence floor, so an unavailable embedding backend
simply means the fast path is skipped.
"""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence

import structlog

from switchboard.agent.llm import LLMClient
from switchboard.agent.registry import AgentDescriptor, AgentId, CapabilityRegistry
from switchboard.routing.types import RoutingDecision, RoutingSource, clamp_confidence

log = structlog.get_logger(__name__)


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 on length mismatch or zero norm."""
    if len(vec1) != len(vec2) or not vec1:
        return 0.0
    dot = sum(a * b for a, b in zip(vec1, vec2, strict=True))
    norm = math.sqrt(sum(a * a for a in vec1)) * math.sqrt(sum(b * b for b in vec2))
    if norm == 0:
        return 0.0
    return dot / norm


def default_utterances(descriptor: AgentDescriptor) -> list[str]:
    """Reference texts for an agent: its description plus one line per capability."""
    return [descriptor.description, *descriptor.capabilities]


class SemanticRouter(ABC):
    """Routes a message by meaning rather than keywords."""

    @abstractmethod
    async def route(self, message: str) -> RoutingDecision | None:
        """Return a decision, or None when no agent is a plausible match."""

    async def warm(self) -> None:
        """Prepare anything route() would otherwise build lazily."""


class EmbeddingSemanticRouter(SemanticRouter):
    """Cosine-similarity routing over per-agent reference embeddings."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        client: LLMClient,
        model: str,
        utterances: Mapping[AgentId, Sequence[str]] | None = None,
    ) -> None:
        self._registry = registry
        self._client = client
        self._model = model
        self._utterances = utterances or {
            descriptor.id: default_utterances(descriptor) for descriptor in registry.list_agents()
        }
        self._index: list[tuple[AgentId, list[float]]] | None = None
        self._index_task: asyncio.Task[list[tuple[AgentId, list[float]]]] | None = None

    async def warm(self) -> None:
        """Build the reference index now instead of on the first route."""
        await self._ensure_index()

    async def _ensure_index(self) -> list[tuple[AgentId, list[float]]]:
        if self._index is not None:
            return self._index
        if self._index_task is None:
            self._index_task = asyncio.create_task(self._build_index(), name="semantic_index_build")
            self._index_task.add_done_callback(self._index_task_done)
        # A caller's deadline cancels only its own wait; the build keeps going.
        return await asyncio.shield(self._index_task)

    async def _build_index(self) -> list[tuple[AgentId, list[float]]]:
        labels: list[AgentId] = []
        texts: list[str] = []
        for agent, utterances in self._utterances.items():
            for text in utterances:
                labels.append(agent)
                texts.append(text)
        vectors = await self._client.embed(texts, self._model)
        self._index = list(zip(labels, vectors, strict=True))
        log.info("semantic_router.index_built", utterances=len(texts), model=self._model)
        return self._index

    def _index_task_done(self, task: asyncio.Task[list[tuple[AgentId, list[float]]]]) -> None:
        if task.cancelled():
            self._index_task = None
            return
        exc = task.exception()
        if exc is not None:
            log.warning("semantic_router.index_build_failed", error=str(exc))
            self._index_task = None

    async def route(self, message: str) -> RoutingDecision | None:
        index = await self._ensure_index()
        if not index:
            return None
        query = await self._client.embed([message], self._model)
        if not query:
            return None

        best: dict[AgentId, float] = {}
        for agent, vector in index:
            similarity = cosine_similarity(query[0], vector)
            if similarity > best.get(agent, float("-inf")):
                best[agent] = similarity

        ranked = sorted(best.items(), key=lambda item: item[1], reverse=True)
        agent, similarity = ranked[0]
        runner_up = ranked[1][0] if len(ranked) > 1 else None
        descriptor = self._registry.get(agent)
        return RoutingDecision(
            agent=agent,
            confidence=clamp_confidence(similarity),
            rationale=f"Semantic match for {descriptor.name} (similarity {similarity:.2f})",
            source=RoutingSource.HEURISTIC,
            fallback_agent=runner_up,
            tool_plan=descriptor.tools[:3],
        )
