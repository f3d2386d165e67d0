"""
Redis client factory for the cache layer.
One pooled asyncio connection handle per process, built from settings.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError

from config import Settings, get_settings

logger = logging.getLogger(__name__)


def _pool_kwargs(settings: Settings) -> dict:
    """Connection options shared by URL and host/port pools."""
    return {
        "max_connections": settings.redis_max_connections,
        "socket_timeout": settings.redis_timeout,
        "socket_connect_timeout": settings.redis_timeout,
        "socket_keepalive": True,
        "retry_on_timeout": True,
        "retry": Retry(ExponentialBackoff(cap=1.0, base=0.05), settings.redis_max_retries),
        "retry_on_error": [ConnectionError, TimeoutError],
        "health_check_interval": settings.redis_health_check_interval,
        "decode_responses": True,
    }


def create_connection_pool(settings: Optional[Settings] = None) -> ConnectionPool:
    """Create the Redis connection pool described by ``settings``."""
    settings = settings or get_settings()
    kwargs = _pool_kwargs(settings)

    if settings.redis_url:
        pool = ConnectionPool.from_url(settings.redis_url, **kwargs)
        target = settings.redis_url
    else:
        pool = ConnectionPool(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password,
            **kwargs
        )
        target = f"{settings.redis_host}:{settings.redis_port}/{settings.redis_db}"

    logger.info(f"🔌 [REDIS] Connection pool configured for {target}")
    return pool


def create_redis_client(settings: Optional[Settings] = None) -> redis.Redis:
    """
    Create a lazily-connecting asyncio Redis client.

    No network I/O happens here; the first command opens the connection.
    Reconnects are handled by the pool on the next command after a drop.
    """
    return redis.Redis(connection_pool=create_connection_pool(settings))
