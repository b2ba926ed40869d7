"""
Unit tests for the RedisClient wrapper.

The underlying redis.asyncio connection is replaced by an AsyncMock so that
lifecycle handling and argument mapping can be verified without a server.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from outbox_pipeline.redis_client import RedisClient


@pytest.fixture
def mock_redis_connection() -> AsyncMock:
    """Provide mock Redis connection for boundary testing."""
    mock = AsyncMock()
    mock.ping = AsyncMock(return_value=True)
    mock.aclose = AsyncMock()
    return mock


@pytest.fixture
def redis_client(mock_redis_connection: AsyncMock) -> RedisClient:
    return RedisClient(
        client_id="test-client",
        redis_url="redis://localhost:6379",
        client=mock_redis_connection,
    )


@pytest.fixture
def started_redis_client(redis_client: RedisClient) -> RedisClient:
    redis_client._started = True
    return redis_client


class TestRedisClientLifecycle:
    @pytest.mark.asyncio
    async def test_start_verifies_connection(
        self, redis_client: RedisClient, mock_redis_connection: AsyncMock
    ) -> None:
        await redis_client.start()

        assert redis_client._started is True
        mock_redis_connection.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_connection_error(
        self, redis_client: RedisClient, mock_redis_connection: AsyncMock
    ) -> None:
        mock_redis_connection.ping.side_effect = RedisConnectionError("Connection refused")

        with pytest.raises(RedisConnectionError):
            await redis_client.start()

        assert redis_client._started is False

    @pytest.mark.asyncio
    async def test_stop_closes_connection(
        self, started_redis_client: RedisClient, mock_redis_connection: AsyncMock
    ) -> None:
        await started_redis_client.stop()

        mock_redis_connection.aclose.assert_awaited_once()
        assert started_redis_client._started is False

    @pytest.mark.asyncio
    async def test_operations_require_start(self, redis_client: RedisClient) -> None:
        with pytest.raises(RuntimeError, match="not running"):
            await redis_client.set_if_not_exists("k", "v", ttl_seconds=10)

        with pytest.raises(RuntimeError, match="not running"):
            await redis_client.lpush("wake", "1")

    @pytest.mark.asyncio
    async def test_ping_reports_false_when_not_started(self, redis_client: RedisClient) -> None:
        assert await redis_client.ping() is False


class TestRedisClientOperations:
    @pytest.mark.asyncio
    async def test_set_if_not_exists_uses_nx_and_ttl(
        self, started_redis_client: RedisClient, mock_redis_connection: AsyncMock
    ) -> None:
        mock_redis_connection.set.return_value = True

        result = await started_redis_client.set_if_not_exists("dedup:k", "v", ttl_seconds=300)

        assert result is True
        mock_redis_connection.set.assert_awaited_once_with("dedup:k", "v", ex=300, nx=True)

    @pytest.mark.asyncio
    async def test_set_if_not_exists_reports_existing_key(
        self, started_redis_client: RedisClient, mock_redis_connection: AsyncMock
    ) -> None:
        mock_redis_connection.set.return_value = None

        assert await started_redis_client.set_if_not_exists("dedup:k", "v") is False

    @pytest.mark.asyncio
    async def test_errors_propagate(
        self, started_redis_client: RedisClient, mock_redis_connection: AsyncMock
    ) -> None:
        mock_redis_connection.get.side_effect = RedisConnectionError("gone")

        with pytest.raises(RedisConnectionError):
            await started_redis_client.get("dedup:k")

    @pytest.mark.asyncio
    async def test_setex_and_delete(
        self, started_redis_client: RedisClient, mock_redis_connection: AsyncMock
    ) -> None:
        mock_redis_connection.setex.return_value = True
        mock_redis_connection.delete.return_value = 1

        assert await started_redis_client.setex("k", 60, "v") is True
        assert await started_redis_client.delete_key("k") == 1

        mock_redis_connection.setex.assert_awaited_once_with("k", 60, "v")
        mock_redis_connection.delete.assert_awaited_once_with("k")

    @pytest.mark.asyncio
    async def test_blpop_returns_pair_or_none(
        self, started_redis_client: RedisClient, mock_redis_connection: AsyncMock
    ) -> None:
        mock_redis_connection.blpop.side_effect = [("wake", "1"), None]

        assert await started_redis_client.blpop(["wake"], timeout=1) == ("wake", "1")
        assert await started_redis_client.blpop(["wake"], timeout=1) is None

    @pytest.mark.asyncio
    async def test_ping_swallows_errors(
        self, started_redis_client: RedisClient, mock_redis_connection: AsyncMock
    ) -> None:
        mock_redis_connection.ping.side_effect = RedisConnectionError("gone")

        assert await started_redis_client.ping() is False
