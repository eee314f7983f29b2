"""Tests for the pool chain client."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import Web3Exception

from amm_phase_monitor.ingestor.chain import PoolChainClient, RPCError


@pytest.fixture
def mock_redis() -> MagicMock:
    redis = MagicMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock()
    return redis


def make_client(**kwargs: Any) -> PoolChainClient:
    kwargs.setdefault("retry_delay_seconds", 0.0)
    kwargs.setdefault("max_requests_per_second", 1_000)
    return PoolChainClient("http://localhost:8545", **kwargs)


class TestImmutableCache:
    @pytest.mark.asyncio
    async def test_cache_hit_skips_rpc(self, mock_redis: MagicMock, pool_id: str) -> None:
        mock_redis.get.return_value = b"25000000000"
        client = make_client(redis=mock_redis)
        client.call_pool = AsyncMock()  # type: ignore[method-assign]

        value = await client.call_pool_immutable(pool_id, "FLAT_CURVE_THRESHOLD")

        assert value == "25000000000"
        client.call_pool.assert_not_awaited()
        mock_redis.get.assert_awaited_once_with(
            f"amm:immutable:{pool_id.lower()}:FLAT_CURVE_THRESHOLD"
        )

    @pytest.mark.asyncio
    async def test_cache_miss_stores_value(self, mock_redis: MagicMock, pool_id: str) -> None:
        client = make_client(redis=mock_redis, immutable_cache_ttl_seconds=60)
        client.call_pool = AsyncMock(return_value=10_000)  # type: ignore[method-assign]

        value = await client.call_pool_immutable(pool_id, "FLAT_CURVE_PRICE")

        assert value == "10000"
        mock_redis.set.assert_awaited_once_with(
            f"amm:immutable:{pool_id.lower()}:FLAT_CURVE_PRICE", "10000", ex=60
        )

    @pytest.mark.asyncio
    async def test_works_without_redis(self, pool_id: str) -> None:
        client = make_client()
        client.call_pool = AsyncMock(return_value="0x" + "2" * 40)  # type: ignore[method-assign]

        assert await client.call_pool_immutable(pool_id, "hokusaiToken") == "0x" + "2" * 40

    @pytest.mark.asyncio
    async def test_redis_error_falls_through_to_rpc(
        self, mock_redis: MagicMock, pool_id: str
    ) -> None:
        mock_redis.get.side_effect = ConnectionError("redis down")
        client = make_client(redis=mock_redis)
        client.call_pool = AsyncMock(return_value=1)  # type: ignore[method-assign]

        assert await client.call_pool_immutable(pool_id, "FLAT_CURVE_PRICE") == "1"


class TestRetryAndFailover:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self) -> None:
        client = make_client(max_retries=3)
        op = AsyncMock(side_effect=[Web3Exception("flaky"), 7])

        assert await client._execute_with_retry("test", op) == 7
        assert op.await_count == 2

    @pytest.mark.asyncio
    async def test_fails_over_to_fallback(self) -> None:
        client = make_client(fallback_rpc_url="http://localhost:8546", max_retries=2)
        seen: list[object] = []

        async def op(w3: Any) -> str:
            seen.append(w3)
            if w3 is client._w3:
                raise OSError("primary down")
            return "ok"

        assert await client._execute_with_retry("test", op) == "ok"
        assert seen[-1] is client._w3_fallback
        assert seen.count(client._w3) == 2

    @pytest.mark.asyncio
    async def test_raises_after_all_attempts(self) -> None:
        client = make_client(max_retries=2)
        op = AsyncMock(side_effect=OSError("down"))

        with pytest.raises(RPCError, match="down"):
            await client._execute_with_retry("test", op)
        assert op.await_count == 2

    @pytest.mark.asyncio
    async def test_primary_retried_without_fallback(self) -> None:
        client = make_client(max_retries=1)
        op = AsyncMock(side_effect=[OSError("down"), 3])

        with pytest.raises(RPCError):
            await client._execute_with_retry("test", op)
        assert await client._execute_with_retry("test", op) == 3

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        client = make_client()
        client.get_block_number = AsyncMock(side_effect=RPCError("down"))  # type: ignore[method-assign]
        assert await client.health_check() is False

        client.get_block_number = AsyncMock(return_value=1)  # type: ignore[method-assign]
        assert await client.health_check() is True


class TestPhaseTransitionLogs:
    @pytest.mark.asyncio
    async def test_empty_range_skips_rpc(self, pool_id: str) -> None:
        client = make_client()
        client._execute_with_retry = AsyncMock()  # type: ignore[method-assign]

        assert await client.get_phase_transition_logs(pool_id, from_block=10, to_block=9) == []
        client._execute_with_retry.assert_not_awaited()
