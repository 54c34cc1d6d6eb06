"""Telemetry package: structured logging plus the routing feedback loop.

This package contains:
- structlog configuration and request-context binding
- TelemetryEvent rows and the sinks they are written to
- TelemetryCollector, the buffered batch writer
- MetricsAggregator, the 24h per-agent rollup read by the LLM router
"""

from __future__ import annotations

from switchboard.telemetry.collector import TelemetryCollector
from switchboard.telemetry.events import (
    ImplicitFeedbackSignal,
    TelemetryEvent,
    TelemetryEventType,
)
from switchboard.telemetry.logging import (
    bind_agent_context,
    bind_request_context,
    clear_context,
    configure_logging,
)
from switchboard.telemetry.metrics import (
    AgentMetrics,
    MetricsAggregator,
    calculate_agent_score,
)
from switchboard.telemetry.sink import (
    InMemoryTelemetrySink,
    SqlTelemetrySink,
    TelemetrySink,
)

__all__ = [
    "AgentMetrics",
    "ImplicitFeedbackSignal",
    "InMemoryTelemetrySink",
    "MetricsAggregator",
    "SqlTelemetrySink",
    "TelemetryCollector",
    "TelemetryEvent",
    "TelemetryEventType",
    "TelemetrySink",
    "bind_agent_context",
    "bind_request_context",
    "calculate_agent_score",
    "clear_context",
    "configure_logging",
]
