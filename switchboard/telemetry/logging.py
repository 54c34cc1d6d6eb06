"""structlog setup for hosts embedding switchboard.

JSON lines in production, coloured console output otherwise. The bind
helpers put user, thread, message and routed agent into structlog
contextvars, so every line logged while handling one message carries them.

A production line looks like:

    {"event": "router.decision", "level": "info", "logger": "switchboard.routing.unified",
     "timestamp": "...", "user_id": "u1", "thread_id": "t9", "agent": "coder", "source": "llm"}
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the host application.

    json_logs selects the JSON renderer; log_level is a stdlib level name.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_context(
    user_id: str,
    thread_id: str | None = None,
    message_id: str | None = None,
) -> None:
    """Bind per-message identifiers to the log context.

    Args:
        user_id: User identifier
        thread_id: Conversation thread identifier
        message_id: Identifier of the inbound message
    """
    context = {"user_id": user_id}
    if thread_id is not None:
        context["thread_id"] = thread_id
    if message_id is not None:
        context["message_id"] = message_id
    structlog.contextvars.bind_contextvars(**context)


def bind_agent_context(agent: str, source: str) -> None:
    """Bind the routed agent and the router that picked it."""
    structlog.contextvars.bind_contextvars(agent=agent, source=source)


def clear_context() -> None:
    """Drop everything bound by the helpers above."""
    structlog.contextvars.clear_contextvars()
