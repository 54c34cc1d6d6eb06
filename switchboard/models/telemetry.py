"""Telemetry event ORM model.

Design principles:
- TelemetryEventRecord: append-only log of every telemetry event. Rows are
  never updated; the metrics aggregator only reads them over a time window.
- Identifiers (user, thread, message) are opaque strings owned by the host
  application, so there are no foreign keys.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from switchboard.database import Base


class TelemetryEventRecord(Base):
    """Append-only log of routing, tool, response and error events.

    Attributes:
        id: Event identifier (hex UUID generated by the producer)
        event_type: routing_decision | tool_execution | response_generated | ...
        user_id: Owning user
        thread_id: Conversation thread, if any
        message_id: Inbound message, if any
        agent: Agent involved in the event
        routing_source: llm | heuristic | fallback | explicit
        confidence: Routing confidence (0.0-1.0)
        latency_ms: Latency in milliseconds
        success: Outcome flag
        tools_used: JSON list of tool names
        fallback_used: True when a degraded path served the request
        user_feedback: Feedback label, if any
        payload: Event-specific JSON
        created_at: UTC timestamp of the event
    """

    __tablename__ = "telemetry_events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    thread_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    agent: Mapped[str | None] = mapped_column(String(32), nullable=True)
    routing_source: Mapped[str | None] = mapped_column(String(16), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    latency_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    success: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    tools_used: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    fallback_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    user_feedback: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        comment="UTC timestamp of the event",
    )

    __table_args__ = (
        # Primary query pattern: events of one type within a time window
        Index("ix_telemetry_events_type_time", "event_type", "created_at"),
        Index("ix_telemetry_events_user_time", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<TelemetryEventRecord type={self.event_type} "
            f"agent={self.agent} success={self.success}>"
        )
