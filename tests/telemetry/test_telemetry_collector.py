"""Tests for the buffered telemetry collector."""

import asyncio

import pytest
import structlog

from switchboard.tasks import BackgroundTaskSupervisor
from switchboard.telemetry.collector import TelemetryCollector
from switchboard.telemetry.events import (
    ImplicitFeedbackSignal,
    TelemetryEvent,
    TelemetryEventType,
)
from switchboard.telemetry.logging import bind_request_context, clear_context
from switchboard.telemetry.sink import InMemoryTelemetrySink, TelemetrySink


class FlakySink(TelemetrySink):
    """Fails the first `failures` inserts, then stores normally."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.inserted: list[TelemetryEvent] = []

    async def insert(self, events):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("database unavailable")
        self.inserted.extend(events)

    async def query(self, since, event_types=None, user_id=None, limit=None):
        return []


def _event(n: int = 0) -> TelemetryEvent:
    return TelemetryEvent(event_type=TelemetryEventType.ERROR, user_id=f"u{n}")


class TestTelemetryCollector:
    """Buffering, flushing and failure handling."""

    @pytest.mark.asyncio
    async def test_flush_writes_buffer(self):
        sink = InMemoryTelemetrySink()
        collector = TelemetryCollector(sink)
        await collector.record(_event())
        await collector.record(_event(1))
        assert collector.pending_count == 2

        assert await collector.flush() == 2
        assert collector.pending_count == 0
        assert len(sink) == 2

    @pytest.mark.asyncio
    async def test_empty_flush(self):
        assert await TelemetryCollector(InMemoryTelemetrySink()).flush() == 0

    @pytest.mark.asyncio
    async def test_full_buffer_schedules_flush(self):
        sink = InMemoryTelemetrySink()
        supervisor = BackgroundTaskSupervisor()
        collector = TelemetryCollector(sink, buffer_size=3, supervisor=supervisor)
        for n in range(3):
            await collector.record(_event(n))
        await supervisor.drain()
        assert len(sink) == 3
        assert collector.pending_count == 0

    @pytest.mark.asyncio
    async def test_failed_flush_rebuffers_oldest_half(self):
        sink = FlakySink(failures=1)
        collector = TelemetryCollector(sink, buffer_size=4)
        events = [_event(n) for n in range(6)]
        for event in events[:3]:
            await collector.record(event)
        # Bypass the auto-flush so the batch is larger than the buffer limit
        collector._buffer.extend(events[3:])

        assert await collector.flush() == 0
        assert collector.pending_count == 2

        assert await collector.flush() == 2
        assert [e.user_id for e in sink.inserted] == ["u0", "u1"]

    @pytest.mark.asyncio
    async def test_periodic_flush_and_shutdown(self):
        sink = InMemoryTelemetrySink()
        collector = TelemetryCollector(sink, flush_interval_seconds=0.05)
        await collector.start()
        await collector.record(_event())
        await asyncio.sleep(0.2)
        assert len(sink) == 1

        await collector.record(_event(1))
        await collector.shutdown()
        assert len(sink) == 2


class TestRecordHelpers:
    """Typed record_* helpers produce the right event rows."""

    @pytest.mark.asyncio
    async def test_routing_decision(self):
        sink = InMemoryTelemetrySink()
        collector = TelemetryCollector(sink)
        await collector.record_routing_decision(
            user_id="u1",
            thread_id="t1",
            agent="home",
            routing_source="fallback",
            confidence=0.76,
            latency_ms=120.0,
            success=True,
            tools_used=["control_device"],
            fallback_used=True,
        )
        await collector.flush()
        (event,) = sink._events
        assert event.event_type == TelemetryEventType.ROUTING_DECISION
        assert event.tools_used == ("control_device",)
        assert event.fallback_used is True

    @pytest.mark.asyncio
    async def test_model_selection_marks_fallback(self):
        sink = InMemoryTelemetrySink()
        collector = TelemetryCollector(sink)
        await collector.record_model_selection(
            user_id="u1", thread_id=None, agent="coder", model="gpt-5.2", provider="openai", chain_index=1
        )
        await collector.flush()
        (event,) = sink._events
        assert event.fallback_used is True
        assert event.payload["chain_index"] == 1

    @pytest.mark.asyncio
    async def test_tool_execution_error_code(self):
        sink = InMemoryTelemetrySink()
        collector = TelemetryCollector(sink)
        await collector.record_tool_execution(
            user_id="u1", thread_id="t1", agent="home", tool="control_device",
            success=False, duration_ms=5000, error_code="TIMEOUT",
        )
        await collector.flush()
        (event,) = sink._events
        assert event.payload == {"tool": "control_device", "error_code": "TIMEOUT"}

    @pytest.mark.asyncio
    async def test_error_message_is_truncated(self):
        sink = InMemoryTelemetrySink()
        collector = TelemetryCollector(sink)
        await collector.record_error(user_id="u1", thread_id=None, error="x" * 900, error_code="UNKNOWN")
        await collector.flush()
        (event,) = sink._events
        assert len(event.payload["error"]) == 500
        assert event.success is False

    @pytest.mark.asyncio
    async def test_implicit_feedback(self):
        sink = InMemoryTelemetrySink()
        collector = TelemetryCollector(sink)
        await collector.record_implicit_feedback(
            user_id="u1", thread_id="t1", agent="coder", signal=ImplicitFeedbackSignal.RETRY
        )
        await collector.flush()
        (event,) = sink._events
        assert event.event_type == TelemetryEventType.USER_FEEDBACK
        assert event.user_feedback == "retry"


def test_event_dict_round_trip():
    event = TelemetryEvent(
        event_type=TelemetryEventType.TOOL_EXECUTION,
        user_id="u1",
        tools_used=("calculate",),
        payload={"tool": "calculate"},
    )
    assert TelemetryEvent.from_dict(event.to_dict()) == event


def test_request_context_binding():
    bind_request_context("u1", thread_id="t1")
    assert structlog.contextvars.get_contextvars() == {"user_id": "u1", "thread_id": "t1"}
    clear_context()
    assert structlog.contextvars.get_contextvars() == {}
