"""Telemetry event model.

Every observable outcome (routing decision, tool call, final response,
error, feedback) is captured as one append-only TelemetryEvent. The common
routing columns are first-class fields so the metrics aggregator can query
them without digging through the payload.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class TelemetryEventType(StrEnum):
    ROUTING_DECISION = "routing_decision"
    MODEL_SELECTION = "model_selection"
    TOOL_EXECUTION = "tool_execution"
    MEMORY_RETRIEVAL = "memory_retrieval"
    RESPONSE_GENERATED = "response_generated"
    USER_FEEDBACK = "user_feedback"
    ERROR = "error"


class ImplicitFeedbackSignal(StrEnum):
    """Negative signals inferred from user behaviour rather than asked for."""

    RETRY = "retry"
    MANUAL_SWITCH = "manual_switch"
    TOOL_FAILURE = "tool_failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class TelemetryEvent:
    """One typed telemetry row.

    Attributes:
        event_type: Kind of event
        user_id: User the request belongs to
        thread_id: Conversation thread, if known
        message_id: Inbound message, if known
        agent: Agent involved (selected agent for routing rows)
        routing_source: Router stage that produced the decision
        confidence: Routing confidence
        latency_ms: End-to-end or per-step latency
        success: Outcome, where applicable
        tools_used: Tool names invoked while serving the message
        fallback_used: True when a degraded path was taken
        user_feedback: Explicit or implicit feedback label
        payload: Event-specific extra fields (JSON-serialisable)
    """

    event_type: TelemetryEventType
    user_id: str
    thread_id: str | None = None
    message_id: str | None = None
    agent: str | None = None
    routing_source: str | None = None
    confidence: float | None = None
    latency_ms: float | None = None
    success: bool | None = None
    tools_used: tuple[str, ...] = ()
    fallback_used: bool = False
    user_feedback: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "thread_id": self.thread_id,
            "message_id": self.message_id,
            "agent": self.agent,
            "routing_source": self.routing_source,
            "confidence": self.confidence,
            "latency_ms": self.latency_ms,
            "success": self.success,
            "tools_used": list(self.tools_used),
            "fallback_used": self.fallback_used,
            "user_feedback": self.user_feedback,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TelemetryEvent:
        return cls(
            id=data["id"],
            event_type=TelemetryEventType(data["event_type"]),
            user_id=data["user_id"],
            thread_id=data.get("thread_id"),
            message_id=data.get("message_id"),
            agent=data.get("agent"),
            routing_source=data.get("routing_source"),
            confidence=data.get("confidence"),
            latency_ms=data.get("latency_ms"),
            success=data.get("success"),
            tools_used=tuple(data.get("tools_used") or ()),
            fallback_used=bool(data.get("fallback_used", False)),
            user_feedback=data.get("user_feedback"),
            payload=data.get("payload") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )
