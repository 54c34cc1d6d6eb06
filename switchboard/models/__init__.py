"""ORM models. Importing this package registers every table on Base.metadata."""

from __future__ import annotations

from switchboard.models.telemetry import TelemetryEventRecord

__all__ = ["TelemetryEventRecord"]
