"""Response caching layer.

Public API:
    CacheBackend          - Abstract base for all backends
    RedisCacheBackend     - Redis-backed shared cache
    InMemoryCacheBackend  - Bounded dict-backed cache for dev/testing
    get_cache_backend     - Factory: selects backend from settings

    CachedResponse        - Dataclass returned by ResponseCache
    ResponseCache         - Quality-gated agent response cache
    is_cacheable          - Policy predicate for personal/time-sensitive queries
    calculate_ttl         - Per-agent / per-query TTL
"""

from switchboard.cache.backend import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    get_cache_backend,
)
from switchboard.cache.response_cache import (
    CachedResponse,
    ResponseCache,
    calculate_ttl,
    is_cacheable,
)

__all__ = [
    "CacheBackend",
    "RedisCacheBackend",
    "InMemoryCacheBackend",
    "get_cache_backend",
    "CachedResponse",
    "ResponseCache",
    "calculate_ttl",
    "is_cacheable",
]
