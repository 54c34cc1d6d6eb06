"""Per-agent performance metrics over a rolling telemetry window.

MetricsAggregator recomputes AgentMetrics from routing_decision rows in the
sink. A refresh always replaces the whole snapshot; nothing is merged in
place, so concurrent readers see either the old or the new table.

The snapshot feeds the LLM router prompt via calculate_agent_score(), which
closes the loop between observed outcomes and future routing.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import MappingProxyType
from typing import Any

import structlog

from switchboard.agent.registry import AgentId, parse_agent_id
from switchboard.routing.types import DEFAULT_ROUTING_POLICY, RoutingPolicy
from switchboard.telemetry.events import TelemetryEventType
from switchboard.telemetry.sink import TelemetrySink

log = structlog.get_logger(__name__)

# Latency at or beyond this scores zero on the latency component
LATENCY_CEILING_MS = 10_000
# No per-agent cost data is tracked yet; every agent gets the same cost score
FLAT_COST_SCORE = 0.8
UNKNOWN_AGENT_SCORE = 0.5


@dataclass(frozen=True)
class AgentMetrics:
    """Aggregated outcome statistics for one agent.

    Attributes:
        agent: Agent identifier
        success_rate: successes / (successes + failures), 1.0 with no data
        avg_latency_ms: Mean routing-to-response latency
        total_requests: Routing decisions in the window
        recent_failures: Failed requests in the window
        last_updated: When this snapshot was computed
    """

    agent: AgentId
    success_rate: float
    avg_latency_ms: float
    total_requests: int
    recent_failures: int
    last_updated: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent.value,
            "success_rate": round(self.success_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "total_requests": self.total_requests,
            "recent_failures": self.recent_failures,
            "last_updated": self.last_updated.isoformat(),
        }


def calculate_agent_score(
    metrics: AgentMetrics | None,
    policy: RoutingPolicy = DEFAULT_ROUTING_POLICY,
) -> float:
    """Weighted performance score used to rank agents in the router prompt."""
    if metrics is None:
        return UNKNOWN_AGENT_SCORE
    latency_score = 1.0 - min(metrics.avg_latency_ms / LATENCY_CEILING_MS, 1.0)
    return (
        metrics.success_rate * policy.success_weight
        + latency_score * policy.latency_weight
        + FLAT_COST_SCORE * policy.cost_weight
    )


class MetricsAggregator:
    """Recomputes per-agent metrics from the telemetry sink."""

    def __init__(self, sink: TelemetrySink, window_hours: int = 24) -> None:
        self._sink = sink
        self._window = timedelta(hours=window_hours)
        self._snapshot: Mapping[AgentId, AgentMetrics] = MappingProxyType({})
        self._refresh_lock = asyncio.Lock()
        self._refreshed_at: datetime | None = None

    @property
    def snapshot(self) -> Mapping[AgentId, AgentMetrics]:
        return self._snapshot

    def get(self, agent: AgentId) -> AgentMetrics | None:
        return self._snapshot.get(agent)

    async def current(self, max_age_seconds: float = 60.0) -> Mapping[AgentId, AgentMetrics]:
        """Return the snapshot, refreshing first when it is older than max_age_seconds."""
        refreshed_at = self._refreshed_at
        if refreshed_at is None or (datetime.now(UTC) - refreshed_at).total_seconds() > max_age_seconds:
            return await self.refresh()
        return self._snapshot

    async def refresh(self) -> Mapping[AgentId, AgentMetrics]:
        """Rebuild the snapshot from the last window of routing decisions.

        Sink failures keep the previous snapshot and are logged.
        """
        async with self._refresh_lock:
            now = datetime.now(UTC)
            try:
                events = await self._sink.query(
                    now - self._window,
                    event_types={TelemetryEventType.ROUTING_DECISION},
                )
            except Exception as exc:
                log.warning("metrics.refresh_failed", error=str(exc), exc_info=True)
                return self._snapshot

            buckets: dict[AgentId, list[tuple[bool | None, float | None]]] = {}
            for event in events:
                agent = parse_agent_id(event.agent)
                if agent is None:
                    continue
                buckets.setdefault(agent, []).append((event.success, event.latency_ms))

            fresh: dict[AgentId, AgentMetrics] = {}
            for agent, rows in buckets.items():
                successes = sum(1 for ok, _ in rows if ok is True)
                failures = sum(1 for ok, _ in rows if ok is False)
                decided = successes + failures
                latencies = [lat for _, lat in rows if lat is not None]
                fresh[agent] = AgentMetrics(
                    agent=agent,
                    success_rate=successes / decided if decided else 1.0,
                    avg_latency_ms=sum(latencies) / len(latencies) if latencies else 0.0,
                    total_requests=len(rows),
                    recent_failures=failures,
                    last_updated=now,
                )

            self._snapshot = MappingProxyType(fresh)
            self._refreshed_at = now
            log.info(
                "metrics.refreshed",
                agents=len(fresh),
                events=len(events),
                window_hours=self._window.total_seconds() / 3600,
            )
            return self._snapshot

    async def get_user_feedback_signals(
        self,
        user_id: str,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Most recent feedback events for a user, newest first."""
        try:
            events = await self._sink.query(
                datetime.now(UTC) - self._window,
                event_types={TelemetryEventType.USER_FEEDBACK},
                user_id=user_id,
                limit=limit,
            )
        except Exception as exc:
            log.warning("metrics.feedback_query_failed", user_id=user_id, error=str(exc))
            return []
        return [
            {
                "agent": event.agent,
                "signal": event.user_feedback,
                "thread_id": event.thread_id,
                "timestamp": event.timestamp.isoformat(),
            }
            for event in events
        ]
