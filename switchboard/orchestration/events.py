"""Orchestration stream events.

stream_message() yields these in order: thread_created (optional), routing,
agent_start, any tool_start/tool_end pairs, content deltas, then exactly
one terminal event, done or error. A cached answer produces the same
sequence with the routing event marked cached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class OrchestrationEventType(StrEnum):
    THREAD_CREATED = "thread_created"
    ROUTING = "routing"
    AGENT_START = "agent_start"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    CONTENT = "content"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class OrchestrationEvent:
    """One event in an orchestration stream.

    Attributes:
        type: Event type
        data: Event payload
        timestamp: ISO 8601 timestamp
    """

    type: OrchestrationEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def is_terminal(self) -> bool:
        return self.type in (OrchestrationEventType.DONE, OrchestrationEventType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}


def thread_created(thread_id: str) -> OrchestrationEvent:
    return OrchestrationEvent(OrchestrationEventType.THREAD_CREATED, {"thread_id": thread_id})


def routing(decision: dict[str, Any]) -> OrchestrationEvent:
    return OrchestrationEvent(OrchestrationEventType.ROUTING, {"decision": decision})


def agent_start(agent: str, model: str | None = None) -> OrchestrationEvent:
    data: dict[str, Any] = {"agent": agent}
    if model:
        data["model"] = model
    return OrchestrationEvent(OrchestrationEventType.AGENT_START, data)


def tool_start(tool: str, args: dict[str, Any], call_id: str) -> OrchestrationEvent:
    return OrchestrationEvent(
        OrchestrationEventType.TOOL_START, {"tool": tool, "args": args, "id": call_id}
    )


def tool_end(tool: str, call_id: str, success: bool, result: Any, duration_ms: float) -> OrchestrationEvent:
    return OrchestrationEvent(
        OrchestrationEventType.TOOL_END,
        {
            "tool": tool,
            "id": call_id,
            "success": success,
            "result": result,
            "duration_ms": round(duration_ms, 1),
        },
    )


def content(delta: str) -> OrchestrationEvent:
    return OrchestrationEvent(OrchestrationEventType.CONTENT, {"delta": delta})


def done(
    full_content: str,
    agent: str,
    thread_id: str | None,
    *,
    cached: bool = False,
    model: str | None = None,
    latency_ms: float | None = None,
) -> OrchestrationEvent:
    data: dict[str, Any] = {
        "full_content": full_content,
        "agent": agent,
        "thread_id": thread_id,
        "cached": cached,
    }
    if model:
        data["model"] = model
    if latency_ms is not None:
        data["latency_ms"] = round(latency_ms)
    return OrchestrationEvent(OrchestrationEventType.DONE, data)


def error(message: str, *, recoverable: bool, code: str | None = None) -> OrchestrationEvent:
    data: dict[str, Any] = {"message": message, "recoverable": recoverable}
    if code:
        data["code"] = code
    return OrchestrationEvent(OrchestrationEventType.ERROR, data)
