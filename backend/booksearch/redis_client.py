"""Shared Redis connection pool.

The search response cache stores JSON strings, so a single pool with
decode_responses=True is enough. The pool is created lazily on first use so
importing this module never opens a connection.

Usage:
    from booksearch.redis_client import get_redis_client

    client = get_redis_client()
    data = client.get("key")  # Returns str
"""
import logging
import threading
from typing import Optional

import redis

from booksearch.config import settings

logger = logging.getLogger(__name__)

_redis_pool: Optional[redis.ConnectionPool] = None
_pool_lock = threading.Lock()


def get_redis_pool() -> redis.ConnectionPool:
    """Get or create the shared Redis connection pool (thread-safe).

    Returns:
        redis.ConnectionPool: The shared connection pool (decode_responses=True)
    """
    global _redis_pool
    if _redis_pool is None:
        with _pool_lock:
            if _redis_pool is None:
                _redis_pool = redis.ConnectionPool(
                    host=settings.redis_host,
                    port=settings.redis_port,
                    db=settings.redis_db,
                    max_connections=settings.redis_max_connections,
                    socket_timeout=settings.redis_socket_timeout,
                    socket_connect_timeout=settings.redis_socket_connect_timeout,
                    decode_responses=True,
                )
                logger.info(
                    f"Created shared Redis pool "
                    f"(host={settings.redis_host}, port={settings.redis_port}, "
                    f"max_connections={settings.redis_max_connections})"
                )
    return _redis_pool


def get_redis_client() -> redis.Redis:
    """Get a Redis client for string operations using the shared pool."""
    return redis.Redis(connection_pool=get_redis_pool())

