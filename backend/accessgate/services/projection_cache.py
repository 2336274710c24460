"""
Projection Cache - versioned effective-access projections.

Provides:
- InMemoryProjectionBackend: thread-safe, bounded, compare-and-set on epoch
- RedisProjectionBackend: shared cache across processes (JSON payloads, TTL)
- ProjectionCache: epoch-verified reads with resolver fallback

A cached projection is served only when its epoch vector equals the
current (global, tenant, user) counters AND no contributing delegation or
grant has passed its start/end/expiry instant. BOUNDED reads may skip the
epoch read for entries younger than the configured staleness bound; STRICT
is the default and always verifies synchronously.
"""

import logging
import re
from collections import OrderedDict
from enum import Enum
from threading import Lock
from typing import Iterator, Optional

import redis
from sqlalchemy.orm import Session

from accessgate.config.settings import Settings
from accessgate.models.base import utcnow
from accessgate.services.access_epochs import read_epochs
from accessgate.services.access_resolver import (
    AccessProjection,
    Deadline,
    EffectiveAccessResolver,
)

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "access_projection:"

# Default Redis socket timeout when no access-check budget is configured.
REDIS_SOCKET_TIMEOUT_SECONDS = 5.0


class Consistency(str, Enum):
    """Caller-declared staleness tolerance for a read."""

    STRICT = "strict"
    BOUNDED = "bounded"


def _cache_key(tenant_id: str, user_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{tenant_id}:{user_id}"


def _tenant_prefix(tenant_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{tenant_id}:"


def redis_glob_escape(value: str) -> str:
    """Escape Redis MATCH metacharacters so value matches only itself."""
    return re.sub(r"([*?\[\]\\])", r"\\\1", value)


def _dominates(existing: tuple, candidate: tuple) -> bool:
    """True if `existing` was computed under strictly newer counters."""
    return existing != candidate and all(e >= c for e, c in zip(existing, candidate))


class InMemoryProjectionBackend:
    """
    Process-local projection store.

    Thread-safe with LRU eviction and TTL. put() never replaces an entry
    computed under newer counters, so a slow recompute cannot overwrite a
    fresher one.
    """

    def __init__(self, max_entries: int = 10000, ttl_seconds: int = 300):
        self._entries: "OrderedDict[str, AccessProjection]" = OrderedDict()
        self._lock = Lock()
        self._max_entries = max_entries
        self._ttl_seconds = ttl_seconds

    def get(self, key: str) -> Optional[AccessProjection]:
        with self._lock:
            projection = self._entries.get(key)
            if projection is None:
                return None
            if projection.age_seconds() > self._ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return projection

    def put(self, key: str, projection: AccessProjection) -> bool:
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and _dominates(tuple(existing.epoch), tuple(projection.epoch)):
                return False
            self._entries[key] = projection
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
            return True

    def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def iter_projections(self) -> Iterator[AccessProjection]:
        with self._lock:
            snapshot = list(self._entries.values())
        return iter(snapshot)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisProjectionBackend:
    """
    Redis-backed projection store shared by every engine process.

    Entries are JSON with a TTL. Concurrent writers race last-writer-wins;
    that is safe because every read re-verifies the epoch vector.
    """

    def __init__(self, client: "redis.Redis", ttl_seconds: int = 300):
        self._redis = client
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        ttl_seconds: int = 300,
        socket_timeout: float = REDIS_SOCKET_TIMEOUT_SECONDS,
    ) -> "RedisProjectionBackend":
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, ttl_seconds=ttl_seconds)

    def get(self, key: str) -> Optional[AccessProjection]:
        try:
            data = self._redis.get(key)
        except redis.RedisError as e:
            logger.warning("projection_cache.redis_get_failed", extra={"error": str(e)})
            return None
        if not data:
            return None
        try:
            return AccessProjection.from_json(data)
        except (ValueError, KeyError) as e:
            logger.warning("projection_cache.deserialize_failed", extra={"key": key, "error": str(e)})
            return None

    def put(self, key: str, projection: AccessProjection) -> bool:
        try:
            self._redis.setex(key, self._ttl_seconds, projection.to_json())
            return True
        except redis.RedisError as e:
            logger.warning("projection_cache.redis_set_failed", extra={"error": str(e)})
            return False

    def delete(self, key: str) -> int:
        try:
            return self._redis.delete(key)
        except redis.RedisError as e:
            logger.warning("projection_cache.redis_delete_failed", extra={"error": str(e)})
            return 0

    def delete_prefix(self, prefix: str) -> int:
        try:
            keys = list(self._redis.scan_iter(match=f"{redis_glob_escape(prefix)}*"))
            if keys:
                return self._redis.delete(*keys)
            return 0
        except redis.RedisError as e:
            logger.warning("projection_cache.redis_delete_failed", extra={"error": str(e)})
            return 0

    def iter_projections(self) -> Iterator[AccessProjection]:
        try:
            keys = list(self._redis.scan_iter(match=f"{CACHE_KEY_PREFIX}*"))
        except redis.RedisError as e:
            logger.warning("projection_cache.redis_scan_failed", extra={"error": str(e)})
            return iter(())
        return (p for p in (self.get(k) for k in keys) if p is not None)

    def clear(self) -> None:
        self.delete_prefix(CACHE_KEY_PREFIX)


class ProjectionCache:
    """
    Caching layer in front of EffectiveAccessResolver.

    Usage:
        cache = ProjectionCache.from_settings(settings)
        projection, from_cache = cache.get_projection(db, tenant_id, user_id)

        # After a committed mutation
        cache.invalidate_user(tenant_id, user_id)
    """

    def __init__(self, backend, max_staleness_seconds: int = 30):
        self.backend = backend
        self.max_staleness_seconds = max_staleness_seconds
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProjectionCache":
        if settings.redis_url:
            # A cache read must not outlive the access-check budget.
            socket_timeout = REDIS_SOCKET_TIMEOUT_SECONDS
            if settings.access_check_timeout_ms > 0:
                socket_timeout = min(socket_timeout, settings.access_check_timeout_seconds)
            backend = RedisProjectionBackend.from_url(
                settings.redis_url,
                ttl_seconds=settings.projection_cache_ttl_seconds,
                socket_timeout=socket_timeout,
            )
            logger.info("projection_cache.backend", extra={"backend": "redis"})
        else:
            backend = InMemoryProjectionBackend(
                max_entries=settings.projection_cache_max_entries,
                ttl_seconds=settings.projection_cache_ttl_seconds,
            )
            logger.info("projection_cache.backend", extra={"backend": "memory"})
        return cls(backend, max_staleness_seconds=settings.projection_max_staleness_seconds)

    def get_projection(
        self,
        db: Session,
        tenant_id: str,
        user_id: str,
        consistency: Consistency = Consistency.STRICT,
        deadline: Optional[Deadline] = None,
    ) -> tuple[AccessProjection, bool]:
        """
        Return (projection, from_cache).

        Store errors and DecisionTimeoutError propagate; the caller decides
        how to fail.
        """
        deadline = deadline or Deadline.unbounded()
        key = _cache_key(tenant_id, user_id)
        now = utcnow()
        cached = self.backend.get(key)

        if (
            consistency == Consistency.BOUNDED
            and cached is not None
            and cached.is_time_valid(now)
            and cached.age_seconds(now) <= self.max_staleness_seconds
        ):
            self.hits += 1
            return cached, True

        # Read the counters BEFORE computing: a mutation committed during the
        # recompute bumps them again, so the stored entry is already stale.
        epoch = read_epochs(db, tenant_id, user_id)
        deadline.check("epoch")

        if cached is not None and tuple(cached.epoch) == tuple(epoch) and cached.is_time_valid(now):
            self.hits += 1
            return cached, True

        self.misses += 1
        projection = EffectiveAccessResolver(db, deadline=deadline).resolve(
            tenant_id, user_id, epoch=epoch, now=now
        )
        self.backend.put(key, projection)
        logger.debug(
            "projection_cache.recomputed",
            extra={"tenant_id": tenant_id, "user_id": user_id, "epoch": list(epoch)},
        )
        return projection, False

    def invalidate_user(self, tenant_id: str, user_id: str) -> int:
        return self.backend.delete(_cache_key(tenant_id, user_id))

    def invalidate_tenant(self, tenant_id: str) -> int:
        count = self.backend.delete_prefix(_tenant_prefix(tenant_id))
        logger.info(
            "projection_cache.tenant_invalidated",
            extra={"tenant_id": tenant_id, "entries": count},
        )
        return count

    def invalidate_all(self) -> int:
        count = self.backend.delete_prefix(CACHE_KEY_PREFIX)
        logger.warning("projection_cache.invalidated_all", extra={"entries": count})
        return count

    def refresh_stale(self, db: Session) -> int:
        """
        Recompute every cached projection whose counters or time window moved.

        Bounds the staleness BOUNDED readers can observe. Returns the number
        of projections recomputed.
        """
        refreshed = 0
        now = utcnow()
        for cached in list(self.backend.iter_projections()):
            epoch = read_epochs(db, cached.tenant_id, cached.user_id)
            if tuple(cached.epoch) == tuple(epoch) and cached.is_time_valid(now):
                continue
            projection = EffectiveAccessResolver(db).resolve(
                cached.tenant_id, cached.user_id, epoch=epoch, now=now
            )
            self.backend.put(_cache_key(cached.tenant_id, cached.user_id), projection)
            refreshed += 1
        if refreshed:
            logger.info("projection_cache.refreshed", extra={"count": refreshed})
        return refreshed
