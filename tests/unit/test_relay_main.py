"""Unit tests for the relay entry point's startup health check."""

from __future__ import annotations

import pytest

from outbox_pipeline.relay_main import check_redis_health

from .._helpers import MockRedisClient


class TestRedisHealthCheck:
    @pytest.mark.asyncio
    async def test_reachable_redis_passes(self, mock_redis_client: MockRedisClient) -> None:
        assert await check_redis_health(mock_redis_client) is True

    @pytest.mark.asyncio
    async def test_unreachable_redis_is_reported_without_raising(
        self, mock_redis_client: MockRedisClient
    ) -> None:
        mock_redis_client.should_fail = True

        assert await check_redis_health(mock_redis_client) is False
