"""Message orchestration: routing, agent execution and streamed events."""

from switchboard.orchestration.events import OrchestrationEvent, OrchestrationEventType
from switchboard.orchestration.service import (
    OrchestrationRequest,
    OrchestrationResult,
    OrchestrationService,
)

__all__ = [
    "OrchestrationEvent",
    "OrchestrationEventType",
    "OrchestrationRequest",
    "OrchestrationResult",
    "OrchestrationService",
]
