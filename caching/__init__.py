"""
Redis caching layer for the ICCT query service.
Provides the cache-aside service, key registry and TTL tiers.
"""

from .cache_service import (
    CacheLookup,
    CacheOptions,
    CacheService,
    CacheStats,
    HealthStatus,
    json_default,
    to_jsonable,
)
from .cache_keys import CacheKeys, CacheTTL
from .redis_client import create_redis_client

__all__ = [
    'CacheLookup',
    'CacheOptions',
    'CacheService',
    'CacheStats',
    'HealthStatus',
    'json_default',
    'to_jsonable',
    'CacheKeys',
    'CacheTTL',
    'create_redis_client',
]
