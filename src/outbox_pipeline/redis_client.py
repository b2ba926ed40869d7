"""
Redis client wrapper for the outbox pipeline.

Provides the Redis operations the pipeline needs: SET NX claims and TTL'd
markers for consumer dedup, plus LPUSH/BLPOP for relay wake-up notifications.
Follows the same start/stop lifecycle as the Kafka publisher.
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from outbox_pipeline.logging_utils import create_service_logger
from outbox_pipeline.protocols import RedisClientProtocol

logger = create_service_logger("outbox_pipeline.redis_client")


class RedisClient(RedisClientProtocol):
    """Redis client with lifecycle management for dedup and wake-up operations."""

    def __init__(
        self,
        *,
        client_id: str,
        redis_url: str,
        connect_timeout: float = 5.0,
        client: Any | None = None,
    ):
        self.redis_url = redis_url
        self.client_id = client_id
        # BLPOP blocks server-side, so the socket timeout must outlast the
        # longest wait callers ask for.
        self.client = client or aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            socket_timeout=None,
        )
        self._started = False

    async def start(self) -> None:
        """Initialize Redis connection with health verification."""
        if self._started:
            return
        try:
            await self.client.ping()
            self._started = True
            logger.info(f"Redis client '{self.client_id}' connected to {self.redis_url}")
        except RedisConnectionError as e:
            logger.error(f"Redis client '{self.client_id}' failed to connect: {e}")
            raise

    async def stop(self) -> None:
        """Clean shutdown of Redis connection."""
        if not self._started:
            return
        try:
            await self.client.aclose()
            self._started = False
            logger.info(f"Redis client '{self.client_id}' disconnected")
        except Exception as e:
            logger.error(
                f"Error stopping Redis client '{self.client_id}': {e}",
                exc_info=True,
            )

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError(f"Redis client '{self.client_id}' is not running.")

    async def set_if_not_exists(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        """
        Atomic SET if NOT EXISTS operation for dedup claims.

        Returns:
            True if key was set (first claim), False if key already exists
        """
        self._require_started()
        try:
            result = await self.client.set(key, value, ex=ttl_seconds, nx=True)
            success = bool(result)
            logger.debug(
                f"Redis SETNX by '{self.client_id}': key='{key}' "
                f"ttl={ttl_seconds}s result={'SET' if success else 'EXISTS'}",
            )
            return success
        except RedisTimeoutError:
            logger.error(f"Timeout on Redis SETNX by '{self.client_id}' for key '{key}'")
            raise
        except Exception as e:
            logger.error(
                f"Error in Redis SETNX by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    async def get(self, key: str) -> str | None:
        self._require_started()
        try:
            value = await self.client.get(key)
            return str(value) if value is not None else None
        except Exception as e:
            logger.error(
                f"Error in Redis GET by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        """Set string value with TTL, overwriting any existing value."""
        self._require_started()
        try:
            result = await self.client.setex(key, ttl_seconds, value)
            logger.debug(f"Redis SETEX by '{self.client_id}': key='{key}' ttl={ttl_seconds}s")
            return bool(result)
        except Exception as e:
            logger.error(
                f"Error in Redis SETEX by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    async def delete_key(self, key: str) -> int:
        """
        Delete a key from Redis.

        Returns:
            Number of keys deleted (0 or 1)
        """
        self._require_started()
        try:
            deleted_count = await self.client.delete(key)
            logger.debug(f"Redis DELETE by '{self.client_id}': key='{key}' deleted={deleted_count}")
            return int(deleted_count)
        except Exception as e:
            logger.error(
                f"Error deleting Redis key '{key}' by '{self.client_id}': {e}",
                exc_info=True,
            )
            raise

    async def lpush(self, key: str, *values: str) -> int:
        """
        Prepend values to a Redis list.

        Returns:
            Length of the list after operation
        """
        self._require_started()
        try:
            return int(await self.client.lpush(key, *values))
        except Exception as e:
            logger.error(
                f"Error in Redis LPUSH by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    async def blpop(self, keys: list[str], timeout: float = 0) -> tuple[str, str] | None:
        """
        Remove and get the first element in a list, or block until one is available.

        Args:
            keys: List of keys to check
            timeout: Maximum time in seconds to block. 0 means block indefinitely.

        Returns:
            Tuple of (key, value) if an element was popped, None if timeout
        """
        self._require_started()
        try:
            result = await self.client.blpop(keys, timeout=timeout)
            if result:
                key, value = result
                return (key, value)
            return None
        except Exception as e:
            logger.error(
                f"Error in Redis BLPOP by '{self.client_id}' for keys {keys}: {e}",
                exc_info=True,
            )
            raise

    async def ping(self) -> bool:
        """Health check; returns False instead of raising when Redis is unreachable."""
        if not self._started:
            return False
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.error(
                f"Error in Redis PING by '{self.client_id}': {e}",
                exc_info=True,
            )
            return False
