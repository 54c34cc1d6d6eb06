"""Telemetry collector service.

Buffered telemetry collection that periodically flushes to a TelemetrySink.

Design:
- Internal buffer guarded by asyncio.Lock
- Auto-flush on buffer size (50 events) or time interval (5 s)
- Non-blocking record methods; recording never raises into the caller
- On flush failure the oldest half-batch is put back in front of the
  buffer and retried next tick, so a dead sink cannot grow memory unbounded
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog

from switchboard.tasks import BackgroundTaskSupervisor
from switchboard.telemetry.events import (
    ImplicitFeedbackSignal,
    TelemetryEvent,
    TelemetryEventType,
)
from switchboard.telemetry.sink import TelemetrySink

log = structlog.get_logger(__name__)


class TelemetryCollector:
    """Buffers telemetry events and writes them to a sink in batches."""

    def __init__(
        self,
        sink: TelemetrySink,
        *,
        buffer_size: int = 50,
        flush_interval_seconds: float = 5.0,
        supervisor: BackgroundTaskSupervisor | None = None,
    ) -> None:
        self._sink = sink
        self._buffer: list[TelemetryEvent] = []
        self._buffer_lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._buffer_size_limit = buffer_size
        self._flush_interval_seconds = flush_interval_seconds
        self._supervisor = supervisor or BackgroundTaskSupervisor()
        self._flush_task: asyncio.Task[None] | None = None

    @property
    def pending_count(self) -> int:
        return len(self._buffer)

    async def start(self) -> None:
        """Start the periodic flush loop (idempotent)."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(
                self._periodic_flush(), name="telemetry_periodic_flush"
            )
            log.info(
                "telemetry.started",
                buffer_size=self._buffer_size_limit,
                flush_interval_seconds=self._flush_interval_seconds,
            )

    async def _periodic_flush(self) -> None:
        """Background task that periodically flushes the buffer."""
        while True:
            try:
                await asyncio.sleep(self._flush_interval_seconds)
                await self.flush()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.error("telemetry.periodic_flush_error", error=str(exc), exc_info=True)

    async def flush(self) -> int:
        """Flush buffered events to the sink.

        Returns:
            Number of events written (0 on failure or empty buffer).
        """
        async with self._flush_lock:
            async with self._buffer_lock:
                if not self._buffer:
                    return 0
                events = self._buffer[:]
                self._buffer.clear()

            try:
                await self._sink.insert(events)
            except Exception as exc:
                keep = events[: max(1, self._buffer_size_limit // 2)]
                async with self._buffer_lock:
                    self._buffer[:0] = keep
                log.error(
                    "telemetry.flush_error",
                    error=str(exc),
                    count=len(events),
                    rebuffered=len(keep),
                    dropped=len(events) - len(keep),
                )
                return 0

        log.debug("telemetry.flushed", count=len(events))
        return len(events)

    async def shutdown(self) -> None:
        """Stop the periodic loop, flush what is left, and wait for pending flushes."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self._supervisor.drain(timeout=5.0)
        await self.flush()
        log.info("telemetry.shutdown", remaining=len(self._buffer))

    # ------------------------------------------------------------------ #
    # Recording
    # ------------------------------------------------------------------ #

    async def record(self, event: TelemetryEvent) -> None:
        """Append an event to the buffer; schedule a flush when it is full."""
        async with self._buffer_lock:
            self._buffer.append(event)
            full = len(self._buffer) >= self._buffer_size_limit

        if full:
            self._supervisor.spawn(self.flush(), name="telemetry_flush")

    async def record_routing_decision(
        self,
        *,
        user_id: str,
        thread_id: str | None,
        agent: str,
        routing_source: str,
        confidence: float,
        latency_ms: float,
        success: bool,
        tools_used: Sequence[str] = (),
        fallback_used: bool = False,
        message_id: str | None = None,
        user_feedback: str | None = None,
    ) -> None:
        await self.record(
            TelemetryEvent(
                event_type=TelemetryEventType.ROUTING_DECISION,
                user_id=user_id,
                thread_id=thread_id,
                message_id=message_id,
                agent=agent,
                routing_source=routing_source,
                confidence=confidence,
                latency_ms=latency_ms,
                success=success,
                tools_used=tuple(tools_used),
                fallback_used=fallback_used,
                user_feedback=user_feedback,
            )
        )

    async def record_model_selection(
        self,
        *,
        user_id: str,
        thread_id: str | None,
        agent: str,
        model: str,
        provider: str,
        chain_index: int,
    ) -> None:
        await self.record(
            TelemetryEvent(
                event_type=TelemetryEventType.MODEL_SELECTION,
                user_id=user_id,
                thread_id=thread_id,
                agent=agent,
                fallback_used=chain_index > 0,
                payload={"model": model, "provider": provider, "chain_index": chain_index},
            )
        )

    async def record_tool_execution(
        self,
        *,
        user_id: str,
        thread_id: str | None,
        agent: str,
        tool: str,
        success: bool,
        duration_ms: float,
        error_code: str | None = None,
    ) -> None:
        payload: dict[str, str] = {"tool": tool}
        if error_code is not None:
            payload["error_code"] = error_code
        await self.record(
            TelemetryEvent(
                event_type=TelemetryEventType.TOOL_EXECUTION,
                user_id=user_id,
                thread_id=thread_id,
                agent=agent,
                latency_ms=duration_ms,
                success=success,
                tools_used=(tool,),
                payload=payload,
            )
        )

    async def record_response(
        self,
        *,
        user_id: str,
        thread_id: str | None,
        agent: str,
        latency_ms: float,
        quality: float | None = None,
        cached: bool = False,
        speculative: bool = False,
    ) -> None:
        await self.record(
            TelemetryEvent(
                event_type=TelemetryEventType.RESPONSE_GENERATED,
                user_id=user_id,
                thread_id=thread_id,
                agent=agent,
                latency_ms=latency_ms,
                success=True,
                payload={"quality": quality, "cached": cached, "speculative": speculative},
            )
        )

    async def record_error(
        self,
        *,
        user_id: str,
        thread_id: str | None,
        error: str,
        error_code: str,
        agent: str | None = None,
        recoverable: bool = False,
    ) -> None:
        await self.record(
            TelemetryEvent(
                event_type=TelemetryEventType.ERROR,
                user_id=user_id,
                thread_id=thread_id,
                agent=agent,
                success=False,
                payload={"error": error[:500], "error_code": error_code, "recoverable": recoverable},
            )
        )

    async def record_implicit_feedback(
        self,
        *,
        user_id: str,
        thread_id: str | None,
        agent: str,
        signal: ImplicitFeedbackSignal,
    ) -> None:
        """Record a negative behavioural signal (retry, manual switch, ...)."""
        await self.record(
            TelemetryEvent(
                event_type=TelemetryEventType.USER_FEEDBACK,
                user_id=user_id,
                thread_id=thread_id,
                agent=agent,
                success=False,
                user_feedback=signal.value,
            )
        )
