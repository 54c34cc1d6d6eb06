"""Conversation store contract.

The orchestrator only needs ordered history for context assembly and a
place to append the new turn. Persistence is the host application's
concern; InMemoryConversationStore covers tests and single-process use.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass(frozen=True)
class ConversationMessage:
    role: str
    content: str
    agent: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_llm_message(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


class ConversationStore(ABC):
    """Ordered per-thread message history."""

    @abstractmethod
    async def create_thread(self, user_id: str, title: str | None = None) -> str:
        """Create a thread and return its id."""

    @abstractmethod
    async def list(self, thread_id: str, limit: int = 20) -> list[ConversationMessage]:
        """Return the newest `limit` messages, oldest first."""

    @abstractmethod
    async def append(self, thread_id: str, message: ConversationMessage) -> None:
        """Append one message to a thread."""


class InMemoryConversationStore(ConversationStore):
    """Dict-of-lists store. Not persistent."""

    def __init__(self) -> None:
        self._threads: dict[str, list[ConversationMessage]] = defaultdict(list)
        self._owners: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create_thread(self, user_id: str, title: str | None = None) -> str:
        thread_id = uuid.uuid4().hex
        async with self._lock:
            self._owners[thread_id] = user_id
            self._threads[thread_id] = []
        return thread_id

    async def list(self, thread_id: str, limit: int = 20) -> list[ConversationMessage]:
        async with self._lock:
            messages = self._threads.get(thread_id, [])
            return messages[-limit:] if limit > 0 else []

    async def append(self, thread_id: str, message: ConversationMessage) -> None:
        async with self._lock:
            self._threads[thread_id].append(message)

    def owner_of(self, thread_id: str) -> str | None:
        return self._owners.get(thread_id)
