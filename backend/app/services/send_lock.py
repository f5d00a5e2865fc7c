# backend/app/services/send_lock.py
"""
In-flight guards for outbound sends.

A second send for the same (client, lead) while the first is still running
is rejected with SendInProgressError (HTTP 409). InFlightLock covers a single
process; RedisInFlightLock covers several API instances with a TTL'd key so a
crashed holder cannot block the lead forever.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Set

import redis.asyncio as redis
from fastapi import Request

from app.config import settings
from app.exceptions import SendInProgressError

logger = logging.getLogger(__name__)

SEND_IN_PROGRESS_MESSAGE = "A message to this prospect is already being sent."

# Deletes the key only if it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def send_lock_key(client_id: Any, lead_id: Any) -> str:
    return f"linkedin:send:{client_id}:{lead_id}"


class InFlightLock:
    """Process-local set of keys currently being worked on."""

    def __init__(self):
        self._keys: Set[str] = set()
        self._guard = asyncio.Lock()

    async def acquire(self, key: str) -> bool:
        async with self._guard:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    async def release(self, key: str) -> None:
        async with self._guard:
            self._keys.discard(key)

    def is_held(self, key: str) -> bool:
        return key in self._keys

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        if not await self.acquire(key):
            raise SendInProgressError(user_message=SEND_IN_PROGRESS_MESSAGE)
        try:
            yield
        finally:
            await self.release(key)


class RedisInFlightLock:
    """SET NX EX based guard shared by every instance pointed at the same Redis."""

    def __init__(self, redis_client: Optional[Any] = None, ttl_seconds: Optional[int] = None):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds or settings.SEND_LOCK_TTL_SECONDS
        self._tokens = {}

    async def initialize(self):
        if not self.redis_client:
            self.redis_client = await redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
            logger.info("Redis connection initialized for send locks")

    async def close(self):
        if self.redis_client:
            await self.redis_client.close()

    async def acquire(self, key: str) -> bool:
        await self.initialize()
        token = uuid.uuid4().hex
        acquired = await self.redis_client.set(key, token, nx=True, ex=self.ttl_seconds)
        if acquired:
            self._tokens[key] = token
        return bool(acquired)

    async def release(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        if token is None or not self.redis_client:
            return
        await self.redis_client.eval(_RELEASE_SCRIPT, 1, key, token)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        if not await self.acquire(key):
            raise SendInProgressError(user_message=SEND_IN_PROGRESS_MESSAGE)
        try:
            yield
        finally:
            await self.release(key)


def build_send_lock(backend: Optional[str] = None):
    """Lock for the configured backend; the app keeps one on app.state."""
    backend = backend or settings.SEND_LOCK_BACKEND
    logger.info(f"Send lock backend: {backend}")
    if backend == "redis":
        return RedisInFlightLock()
    return InFlightLock()


def get_send_lock(request: Request):
    """FastAPI dependency: the lock created at startup."""
    return request.app.state.send_lock
