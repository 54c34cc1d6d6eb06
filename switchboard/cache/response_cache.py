"""Response cache - gated caching of final agent responses.

Entries are keyed on SHA-256 of (normalised message, agent, optional user
id). A second, agent-less index key maps (message, user) to the agent that
answered, so a lookup can happen before routing has chosen an agent.

Only a subset of traffic is cacheable:
- personalised or time-sensitive messages are never cached (is_cacheable)
- home, finance and secretary answers reflect live state and are skipped
- responses below the quality floor are not stored

TTL depends on the agent and on whether the message asks for a definition
(calculate_ttl). Every backend failure degrades to a miss.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from switchboard.agent.registry import AgentId, parse_agent_id
from switchboard.cache.backend import CacheBackend

log = structlog.get_logger(__name__)

_RESPONSE_NS = "resp"
_INDEX_NS = "resp_idx"

HOUR = 3600
DEFAULT_TTL = HOUR
DEFINITIONAL_TTL = 24 * HOUR
AGENT_TTLS: dict[AgentId, int] = {
    AgentId.RESEARCHER: 6 * HOUR,
    AgentId.CODER: 24 * HOUR,
    AgentId.PERSONALITY: HOUR,
}
UNCACHEABLE_AGENTS = frozenset({AgentId.HOME, AgentId.FINANCE, AgentId.SECRETARY})

_PERSONAL = re.compile(r"\b(?:my|me|i)\b")
_TIME_SENSITIVE = re.compile(
    r"\b(?:today|now|latest|current|tomorrow|yesterday|this week)\b"
)
_DEFINITIONAL = ("what is", "define", "explain")


def normalize_message(message: str) -> str:
    return " ".join(message.lower().split())


def is_cacheable(message: str, agent: AgentId) -> bool:
    """False for personalised, time-sensitive or live-state queries."""
    if agent in UNCACHEABLE_AGENTS:
        return False
    normalized = normalize_message(message)
    return not (_PERSONAL.search(normalized) or _TIME_SENSITIVE.search(normalized))


def calculate_ttl(message: str, agent: AgentId, default: int = DEFAULT_TTL) -> int:
    """Seconds to keep a response: definitional questions 24h, else per agent."""
    normalized = normalize_message(message)
    if any(phrase in normalized for phrase in _DEFINITIONAL):
        return DEFINITIONAL_TTL
    return AGENT_TTLS.get(agent, default)


@dataclass
class CachedResponse:
    """A stored agent response."""

    response: str
    agent: AgentId
    quality: float
    ttl: int
    cached_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": self.response,
            "agent": self.agent.value,
            "quality": self.quality,
            "ttl": self.ttl,
            "cached_at": self.cached_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedResponse | None:
        agent = parse_agent_id(data.get("agent"))
        if agent is None:
            return None
        return cls(
            response=data["response"],
            agent=agent,
            quality=float(data.get("quality", 0.0)),
            ttl=int(data["ttl"]),
            cached_at=datetime.fromisoformat(data["cached_at"]),
        )


class ResponseCache:
    """Quality-gated response cache over a CacheBackend.

    Args:
        backend: Storage backend
        min_quality: Responses scoring below this are not stored
        scope_by_user: Mix the user id into keys so users never share entries
        default_ttl: TTL for agents without a specific one
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        min_quality: float = 0.7,
        scope_by_user: bool = False,
        default_ttl: int = DEFAULT_TTL,
    ) -> None:
        self._backend = backend
        self._default_ttl = default_ttl
        self._min_quality = min_quality
        self._scope_by_user = scope_by_user

    # ------------------------------------------------------------------
    # Key helpers
    # ------------------------------------------------------------------

    def _user_part(self, user_id: str | None) -> str:
        return (user_id or "") if self._scope_by_user else ""

    def cache_key(self, message: str, agent: AgentId, user_id: str | None = None) -> str:
        raw = f"{normalize_message(message)}\x1f{agent.value}\x1f{self._user_part(user_id)}"
        return f"{_RESPONSE_NS}:{hashlib.sha256(raw.encode()).hexdigest()}"

    def index_key(self, message: str, user_id: str | None = None) -> str:
        raw = f"{normalize_message(message)}\x1f{self._user_part(user_id)}"
        return f"{_INDEX_NS}:{hashlib.sha256(raw.encode()).hexdigest()}"

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def get(
        self,
        message: str,
        *,
        agent: AgentId | None = None,
        user_id: str | None = None,
    ) -> CachedResponse | None:
        """Return a live entry, or None.

        Without an agent, the index key resolves which agent last answered
        this message.
        """
        try:
            if agent is None:
                agent = parse_agent_id(await self._backend.get(self.index_key(message, user_id)))
                if agent is None:
                    log.debug("response_cache.miss", reason="no_index")
                    return None
            key = self.cache_key(message, agent, user_id)
            data = await self._backend.get(key)
        except Exception as exc:
            log.warning("response_cache.get_failed", error=str(exc))
            return None

        if not isinstance(data, dict):
            log.debug("response_cache.miss", key=key)
            return None
        cached = CachedResponse.from_dict(data)
        if cached is not None:
            log.debug("response_cache.hit", key=key, agent=cached.agent.value)
        return cached

    async def set(
        self,
        message: str,
        response: str,
        agent: AgentId,
        *,
        quality: float,
        user_id: str | None = None,
        ttl: int | None = None,
    ) -> bool:
        """Store a response if it passes the cacheability and quality gates.

        Returns:
            True when the response was written.
        """
        if not is_cacheable(message, agent):
            log.debug("response_cache.skipped", reason="not_cacheable", agent=agent.value)
            return False
        if quality < self._min_quality:
            log.debug("response_cache.skipped", reason="low_quality", quality=round(quality, 3))
            return False
        if not response.strip():
            return False

        ttl = ttl if ttl is not None else calculate_ttl(message, agent, self._default_ttl)
        cached = CachedResponse(
            response=response,
            agent=agent,
            quality=quality,
            ttl=ttl,
            cached_at=datetime.now(UTC),
        )
        try:
            await self._backend.set(self.cache_key(message, agent, user_id), cached.to_dict(), ttl)
            await self._backend.set(self.index_key(message, user_id), agent.value, ttl)
        except Exception as exc:
            log.warning("response_cache.set_failed", error=str(exc))
            return False
        log.debug("response_cache.stored", agent=agent.value, ttl=ttl)
        return True

    async def invalidate(
        self,
        message: str,
        agent: AgentId | None = None,
        user_id: str | None = None,
    ) -> None:
        """Drop the entry for a message (for one agent, or whichever answered it)."""
        index_key = self.index_key(message, user_id)
        try:
            indexed = parse_agent_id(await self._backend.get(index_key))
            target = agent or indexed
            if target is not None:
                await self._backend.delete(self.cache_key(message, target, user_id))
            if indexed is not None and (agent is None or agent == indexed):
                await self._backend.delete(index_key)
        except Exception as exc:
            log.warning("response_cache.invalidate_failed", error=str(exc))

    async def clear(self) -> int:
        """Remove every cached response. Returns the number of keys deleted."""
        deleted = await self._backend.delete_pattern(f"{_RESPONSE_NS}:*")
        deleted += await self._backend.delete_pattern(f"{_INDEX_NS}:*")
        log.info("response_cache.cleared", keys_deleted=deleted)
        return deleted

    async def get_cache_stats(self) -> dict[str, Any]:
        info = await self._backend.info()
        return {
            "backend": info.get("backend", "unknown"),
            "connected": info.get("connected", False),
            "total_keys": info.get("keys", 0),
            "hits": info.get("hits", 0),
            "misses": info.get("misses", 0),
            "hit_rate": info.get("hit_rate", 0.0),
        }
