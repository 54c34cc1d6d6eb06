"""Telemetry sinks - where flushed events are persisted.

Defines the TelemetrySink ABC and two implementations:
- SqlTelemetrySink: SQLAlchemy async sink writing TelemetryEventRecord rows
- InMemoryTelemetrySink: bounded deque, for tests and single-process dev

The write path is a batch append; the read path is a time-window query
used by the metrics aggregator.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Collection, Sequence
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.models.telemetry import TelemetryEventRecord
from switchboard.telemetry.events import TelemetryEvent, TelemetryEventType

log = structlog.get_logger(__name__)


class TelemetrySink(ABC):
    """Append-only store of telemetry events."""

    @abstractmethod
    async def insert(self, events: Sequence[TelemetryEvent]) -> None:
        """Persist a batch of events. May raise; the collector handles retries."""

    @abstractmethod
    async def query(
        self,
        since: datetime,
        event_types: Collection[TelemetryEventType] | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[TelemetryEvent]:
        """Return events at or after `since`, oldest first (newest first when limited)."""


class InMemoryTelemetrySink(TelemetrySink):
    """Deque-backed sink. Oldest events are dropped past max_events."""

    def __init__(self, max_events: int = 10_000) -> None:
        self._events: deque[TelemetryEvent] = deque(maxlen=max_events)
        self._lock = asyncio.Lock()

    async def insert(self, events: Sequence[TelemetryEvent]) -> None:
        async with self._lock:
            self._events.extend(events)

    async def query(
        self,
        since: datetime,
        event_types: Collection[TelemetryEventType] | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[TelemetryEvent]:
        async with self._lock:
            matches = [
                event
                for event in self._events
                if event.timestamp >= since
                and (event_types is None or event.event_type in event_types)
                and (user_id is None or event.user_id == user_id)
            ]
        if limit is not None:
            return sorted(matches, key=lambda e: e.timestamp, reverse=True)[:limit]
        return matches

    def __len__(self) -> int:
        return len(self._events)


class SqlTelemetrySink(TelemetrySink):
    """Telemetry sink backed by a relational database.

    The session factory is injected so the host controls engine lifetime.
    Each insert/query opens its own short-lived session.

    Usage:
        engine = build_engine(settings)
        sink = SqlTelemetrySink(build_session_factory(engine))
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory
        log.info("sql_telemetry_sink.initialized")

    @staticmethod
    def _to_record(event: TelemetryEvent) -> TelemetryEventRecord:
        return TelemetryEventRecord(
            id=event.id,
            event_type=event.event_type.value,
            user_id=event.user_id,
            thread_id=event.thread_id,
            message_id=event.message_id,
            agent=event.agent,
            routing_source=event.routing_source,
            confidence=event.confidence,
            latency_ms=event.latency_ms,
            success=event.success,
            tools_used=list(event.tools_used),
            fallback_used=event.fallback_used,
            user_feedback=event.user_feedback,
            payload=event.payload,
            created_at=event.timestamp,
        )

    @staticmethod
    def _to_event(record: TelemetryEventRecord) -> TelemetryEvent:
        created_at = record.created_at
        # SQLite drops tzinfo on the way back out
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        return TelemetryEvent(
            id=record.id,
            event_type=TelemetryEventType(record.event_type),
            user_id=record.user_id,
            thread_id=record.thread_id,
            message_id=record.message_id,
            agent=record.agent,
            routing_source=record.routing_source,
            confidence=record.confidence,
            latency_ms=record.latency_ms,
            success=record.success,
            tools_used=tuple(record.tools_used or ()),
            fallback_used=record.fallback_used,
            user_feedback=record.user_feedback,
            payload=record.payload or {},
            timestamp=created_at,
        )

    async def insert(self, events: Sequence[TelemetryEvent]) -> None:
        if not events:
            return
        async with self._session_factory() as session:
            try:
                session.add_all([self._to_record(event) for event in events])
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        log.debug("sql_telemetry_sink.inserted", count=len(events))

    async def query(
        self,
        since: datetime,
        event_types: Collection[TelemetryEventType] | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[TelemetryEvent]:
        stmt = select(TelemetryEventRecord).where(TelemetryEventRecord.created_at >= since)
        if event_types is not None:
            stmt = stmt.where(
                TelemetryEventRecord.event_type.in_([t.value for t in event_types])
            )
        if user_id is not None:
            stmt = stmt.where(TelemetryEventRecord.user_id == user_id)
        if limit is not None:
            stmt = stmt.order_by(TelemetryEventRecord.created_at.desc()).limit(limit)
        else:
            stmt = stmt.order_by(TelemetryEventRecord.created_at.asc())

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            records = result.scalars().all()
        return [self._to_event(record) for record in records]
