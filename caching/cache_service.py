"""
Redis-backed cache service for the ICCT query layer.
Cache-aside access with key prefixing, JSON serialization, TTL defaults,
pattern invalidation and hit/miss statistics.

Every public method contains store failures: a broken or unreachable Redis
degrades to a miss (reads), ``False`` (writes) or ``0`` (bulk deletes) and is
logged. Only the slow-path fetch passed to ``get_or_set`` may raise.
"""

import inspect
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, TypeVar, Union
from uuid import UUID

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from caching.redis_client import create_redis_client
from config import Settings, get_settings
from utils.exceptions import CacheBackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Batch size for SCAN iteration and the DEL calls that follow it
SCAN_BATCH_SIZE = 500

# Errors that mean the connection itself is gone, not just one bad command
CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


def json_default(value: Any) -> Any:
    """Encode the non-JSON types that database records commonly carry."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_jsonable(value: Any) -> Any:
    """Return ``value`` in exactly the shape it will have after a cache round-trip."""
    return json.loads(json.dumps(value, default=json_default))


@dataclass
class CacheOptions:
    """Per-call overrides for TTL (seconds) and key prefix."""
    ttl: Optional[int] = None
    prefix: Optional[str] = None


@dataclass(frozen=True)
class CacheLookup(Generic[T]):
    """Result of a cache read. ``hit`` is False for misses and degraded reads alike."""
    hit: bool
    value: Optional[T] = None


MISS: CacheLookup = CacheLookup(hit=False)


@dataclass
class CacheStats:
    """Process-local counters combined with store-reported figures."""
    hits: int = 0
    misses: int = 0
    errors: int = 0
    total_keys: int = 0
    memory_usage: str = "Unknown"
    connected: bool = True

    @property
    def hit_rate(self) -> float:
        """Hit rate percentage, 0 when nothing has been read yet."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hit_rate": round(self.hit_rate, 2),
            "total_keys": self.total_keys,
            "memory_usage": self.memory_usage,
            "connected": self.connected,
        }


@dataclass
class HealthStatus:
    """Outcome of a store ping."""
    healthy: bool
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    checked_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"healthy": self.healthy, "checked_at": self.checked_at}
        if self.latency_ms is not None:
            result["latency_ms"] = round(self.latency_ms, 2)
        if self.error is not None:
            result["error"] = self.error
        return result


class CacheService:
    """
    Single point of access to Redis for cached query results.

    The Redis handle is shared by every call made through one instance. When
    a command fails with a connection error the service marks itself
    disconnected and short-circuits further commands until
    ``reconnect_interval`` seconds have passed, then checks with a PING
    before letting traffic through again.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        *,
        settings: Optional[Settings] = None,
        key_prefix: Optional[str] = None,
        default_ttl: Optional[int] = None,
        reconnect_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.redis_client = redis_client if redis_client is not None else create_redis_client(self.settings)
        self.key_prefix = key_prefix if key_prefix is not None else self.settings.cache_key_prefix
        self.default_ttl = default_ttl if default_ttl is not None else self.settings.cache_default_ttl
        self.reconnect_interval = (
            reconnect_interval if reconnect_interval is not None else self.settings.cache_reconnect_interval
        )
        self._clock = clock

        self._stats = {"hits": 0, "misses": 0, "errors": 0}
        self._stats_lock = threading.Lock()

        # Optimistic until the first failure; the client connects lazily
        self._connected = True
        self._last_failure_at = 0.0
        self._closed = False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _make_key(self, key: str, options: Optional[CacheOptions] = None) -> str:
        """Create prefixed cache key."""
        prefix = options.prefix if options is not None and options.prefix is not None else self.key_prefix
        return f"{prefix}{key}"

    def _update_stats(self, *counters: str) -> None:
        with self._stats_lock:
            for counter in counters:
                self._stats[counter] += 1

    def _handle_store_error(self, operation: str, key: Optional[str], error: Exception) -> None:
        """Log a contained store failure and update connection state."""
        failure = CacheBackendError(operation, key=key, cause=error)
        logger.error(f"❌ [CACHE] {failure.message}: {error}", extra={"cache_key": key})
        self._update_stats("errors")

        if isinstance(error, CONNECTION_ERRORS):
            if self._connected:
                logger.warning("⚠️ [CACHE] Redis marked disconnected, skipping cache until it answers a ping")
            self._connected = False
            self._last_failure_at = self._clock()

    async def _ensure_connected(self) -> bool:
        """Return True when commands may be sent to the store."""
        if self._closed:
            return False
        if self._connected:
            return True
        if self._clock() - self._last_failure_at < self.reconnect_interval:
            return False

        try:
            await self.redis_client.ping()
        except Exception as e:
            self._handle_store_error("reconnect ping", None, e)
            # Failure timestamp restarts the back-off window
            self._last_failure_at = self._clock()
            return False

        self._connected = True
        logger.info("✅ [CACHE] Redis connection restored")
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def lookup(self, key: str, options: Optional[CacheOptions] = None) -> CacheLookup:
        """
        Read ``key`` and report whether it was a hit.

        A cached JSON ``null`` is a hit whose value is None. Store errors,
        a disconnected store and undecodable payloads all count as misses.
        """
        full_key = self._make_key(key, options)

        if not await self._ensure_connected():
            self._update_stats("misses", "errors")
            return MISS

        try:
            raw = await self.redis_client.get(full_key)
        except Exception as e:
            self._handle_store_error("get", full_key, e)
            self._update_stats("misses")
            return MISS

        if raw is None:
            self._update_stats("misses")
            logger.debug(f"Cache MISS: {full_key}", extra={"cache_key": full_key})
            return MISS

        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"⚠️ [CACHE] Undecodable payload at {full_key}, treating as miss: {e}", extra={"cache_key": full_key})
            self._update_stats("misses")
            return MISS

        self._update_stats("hits")
        logger.debug(f"Cache HIT: {full_key}", extra={"cache_key": full_key})
        return CacheLookup(hit=True, value=value)

    async def get(self, key: str, options: Optional[CacheOptions] = None) -> Optional[Any]:
        """Return the cached value for ``key`` or None on a miss."""
        result = await self.lookup(key, options)
        return result.value if result.hit else None

    async def exists(self, key: str, options: Optional[CacheOptions] = None) -> bool:
        """Check if key exists in cache."""
        full_key = self._make_key(key, options)
        if not await self._ensure_connected():
            return False
        try:
            return await self.redis_client.exists(full_key) > 0
        except Exception as e:
            self._handle_store_error("exists", full_key, e)
            return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(self, key: str, value: Any, options: Optional[CacheOptions] = None) -> bool:
        """
        Store ``value`` as JSON with an expiry.

        Returns False instead of raising when the value cannot be encoded or
        the store rejects the write.
        """
        try:
            payload = json.dumps(value, default=json_default)
        except (TypeError, ValueError) as e:
            logger.error(f"❌ [CACHE] Serialization failed for key {self._make_key(key, options)}: {e}")
            return False

        return await self._write_payload(key, payload, options)

    async def _write_payload(self, key: str, payload: str, options: Optional[CacheOptions] = None) -> bool:
        full_key = self._make_key(key, options)
        ttl = options.ttl if options is not None and options.ttl is not None else self.default_ttl

        if ttl <= 0:
            logger.warning(f"⚠️ [CACHE] Refusing to cache {full_key} with non-positive TTL {ttl}")
            return False

        if not await self._ensure_connected():
            return False

        try:
            await self.redis_client.setex(full_key, ttl, payload)
            return True
        except Exception as e:
            self._handle_store_error("set", full_key, e)
            return False

    async def delete(self, key: str, options: Optional[CacheOptions] = None) -> bool:
        """Delete a single key. True only if something was removed."""
        full_key = self._make_key(key, options)
        if not await self._ensure_connected():
            return False
        try:
            deleted = await self.redis_client.delete(full_key)
            return deleted > 0
        except Exception as e:
            self._handle_store_error("delete", full_key, e)
            return False

    async def delete_many(self, keys: Iterable[str], options: Optional[CacheOptions] = None) -> int:
        """Delete several keys, returning how many actually existed."""
        full_keys = [self._make_key(key, options) for key in keys]
        if not full_keys:
            return 0
        if not await self._ensure_connected():
            return 0
        try:
            return await self.redis_client.delete(*full_keys)
        except Exception as e:
            self._handle_store_error("delete many", ",".join(full_keys), e)
            return 0

    async def get_or_set(
        self,
        key: str,
        fetch_fn: Callable[[], Union[Awaitable[T], T]],
        options: Optional[CacheOptions] = None,
    ) -> T:
        """
        Cache-aside read.

        Returns the cached value when present. Otherwise calls ``fetch_fn``,
        stores its result (best effort) and returns it decoded from the stored
        payload, so cold and warm reads yield the same structure. A result that
        cannot be encoded is returned as-is and not cached. Exceptions raised
        by ``fetch_fn`` propagate unchanged.
        """
        cached = await self.lookup(key, options)
        if cached.hit:
            return cached.value

        fresh = fetch_fn()
        if inspect.isawaitable(fresh):
            fresh = await fresh

        full_key = self._make_key(key, options)
        try:
            payload = json.dumps(fresh, default=json_default)
        except (TypeError, ValueError) as e:
            logger.error(f"❌ [CACHE] Serialization failed for key {full_key}: {e}", extra={"cache_key": full_key})
            return fresh

        if not await self._write_payload(key, payload, options):
            logger.debug(f"Cache write skipped for {full_key}", extra={"cache_key": full_key})
        return json.loads(payload)

    async def invalidate_pattern(self, pattern: str, options: Optional[CacheOptions] = None) -> int:
        """
        Delete every key matching ``prefix + pattern`` (Redis glob syntax).

        Returns the number of keys removed, 0 when the scan or delete fails.
        """
        full_pattern = self._make_key(pattern, options)
        if not await self._ensure_connected():
            logger.warning(f"⚠️ [CACHE] Invalidation of '{full_pattern}' skipped, Redis unavailable", extra={"pattern": full_pattern})
            return 0

        removed = 0
        batch: List[str] = []
        try:
            async for matched in self.redis_client.scan_iter(match=full_pattern, count=SCAN_BATCH_SIZE):
                batch.append(matched)
                if len(batch) >= SCAN_BATCH_SIZE:
                    removed += await self.redis_client.delete(*batch)
                    batch = []
            if batch:
                removed += await self.redis_client.delete(*batch)
        except Exception as e:
            self._handle_store_error("invalidate pattern", full_pattern, e)
            logger.warning(f"⚠️ [CACHE] Invalidation of '{full_pattern}' incomplete, stale entries may remain", extra={"pattern": full_pattern})
            return 0

        if removed:
            logger.info(f"🗑️ [CACHE] Invalidated {removed} entries for pattern '{full_pattern}'", extra={"pattern": full_pattern})
        return removed

    async def clear(self) -> bool:
        """Flush the whole Redis database this service points at."""
        if not await self._ensure_connected():
            return False
        try:
            await self.redis_client.flushdb()
            logger.info("🧹 [CACHE] Redis database flushed")
            return True
        except Exception as e:
            self._handle_store_error("clear", None, e)
            return False

    # ------------------------------------------------------------------
    # Observability and lifecycle
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def hit_rate(self) -> float:
        """Local hit rate without a store round-trip."""
        return self._snapshot().hit_rate

    def _snapshot(self) -> CacheStats:
        with self._stats_lock:
            return CacheStats(
                hits=self._stats["hits"],
                misses=self._stats["misses"],
                errors=self._stats["errors"],
                connected=self.connected,
            )

    async def get_stats(self) -> CacheStats:
        """Local counters plus key count and memory usage reported by Redis."""
        stats = self._snapshot()
        if not await self._ensure_connected():
            stats.memory_usage = "Unavailable"
            stats.connected = False
            return stats

        try:
            stats.total_keys = await self.redis_client.dbsize()
            info = await self.redis_client.info("memory")
            stats.memory_usage = str(info.get("used_memory_human", "Unknown"))
        except Exception as e:
            self._handle_store_error("stats", None, e)
            stats.memory_usage = "Error"
            stats.connected = self.connected
        return stats

    async def health_check(self) -> HealthStatus:
        """Ping the store, measure latency and refresh the connected flag."""
        if self._closed:
            return HealthStatus(healthy=False, error="cache service closed")

        start = time.perf_counter()
        try:
            await self.redis_client.ping()
        except Exception as e:
            self._handle_store_error("health check", None, e)
            return HealthStatus(healthy=False, error=str(e))

        latency_ms = (time.perf_counter() - start) * 1000
        if not self._connected:
            logger.info("✅ [CACHE] Redis connection restored by health check")
        self._connected = True
        return HealthStatus(healthy=True, latency_ms=latency_ms)

    def reset_stats(self) -> None:
        """Zero the hit/miss/error counters."""
        with self._stats_lock:
            for counter in self._stats:
                self._stats[counter] = 0

    async def close(self) -> None:
        """Close the Redis connection. Later calls degrade to misses."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.redis_client.aclose()
            logger.info("👋 [CACHE] Redis connection closed")
        except Exception as e:
            logger.error(f"❌ [CACHE] Error closing Redis connection: {e}")

    async def __aenter__(self) -> "CacheService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
