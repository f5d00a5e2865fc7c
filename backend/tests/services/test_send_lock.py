# tests/services/test_send_lock.py
"""
Tests for the in-flight send guards

Run with: pytest tests/services/test_send_lock.py -v
"""

import pytest
from unittest.mock import AsyncMock, Mock

from app.exceptions import SendInProgressError
from app.services.send_lock import (
    InFlightLock,
    RedisInFlightLock,
    build_send_lock,
    send_lock_key,
)


def test_key_is_scoped_by_client_and_lead():
    assert send_lock_key("c1", "l1") == "linkedin:send:c1:l1"
    assert send_lock_key("c1", "l1") != send_lock_key("c2", "l1")


def test_build_send_lock():
    assert isinstance(build_send_lock("memory"), InFlightLock)
    assert isinstance(build_send_lock("redis"), RedisInFlightLock)


class TestInFlightLock:

    @pytest.mark.asyncio
    async def test_second_holder_rejected(self):
        lock = InFlightLock()

        async with lock.hold("k"):
            assert lock.is_held("k")
            with pytest.raises(SendInProgressError) as exc_info:
                async with lock.hold("k"):
                    pass
            assert exc_info.value.status_code == 409

        assert not lock.is_held("k")

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        lock = InFlightLock()

        with pytest.raises(RuntimeError):
            async with lock.hold("k"):
                raise RuntimeError("send failed")

        assert await lock.acquire("k") is True

    @pytest.mark.asyncio
    async def test_keys_independent(self):
        lock = InFlightLock()

        async with lock.hold("a"):
            async with lock.hold("b"):
                assert lock.is_held("a") and lock.is_held("b")


class TestRedisInFlightLock:

    @pytest.mark.asyncio
    async def test_acquire_uses_set_nx_with_ttl(self):
        redis_client = Mock()
        redis_client.set = AsyncMock(return_value=True)
        redis_client.eval = AsyncMock(return_value=1)
        lock = RedisInFlightLock(redis_client, ttl_seconds=30)

        async with lock.hold("k"):
            args, kwargs = redis_client.set.await_args
            assert args[0] == "k"
            assert kwargs == {"nx": True, "ex": 30}

        token = args[1]
        redis_client.eval.assert_awaited_once()
        assert redis_client.eval.await_args.args[2:] == ("k", token)

    @pytest.mark.asyncio
    async def test_held_elsewhere(self):
        redis_client = Mock()
        redis_client.set = AsyncMock(return_value=None)
        redis_client.eval = AsyncMock()
        lock = RedisInFlightLock(redis_client, ttl_seconds=30)

        with pytest.raises(SendInProgressError):
            async with lock.hold("k"):
                pass
        redis_client.eval.assert_not_awaited()
