"""
Per-conversation locks — serialize all work on one conversation.

The scheduler holds the lock for a whole run, so a second event for the same
conversation waits behind it and then sees the updated state.

Backends:
  - InMemoryConversationLocks: asyncio.Lock per conversation (one process)
  - RedisConversationLocks:    redis lock with a lease (several processes)

Usage:
    locks = create_locks({"backend": "memory"})
    async with locks.hold("conv-1"):
        ...
"""
from __future__ import annotations

import asyncio
import structlog
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator

from models.errors import FlowEngineError

logger = structlog.get_logger()


class LockTimeout(FlowEngineError):
    def __init__(self, conversation_id: str, waited: float):
        self.conversation_id = conversation_id
        super().__init__(f"Could not lock conversation {conversation_id} within {waited}s")


class ConversationLocks(ABC):

    @abstractmethod
    def hold(self, conversation_id: str):
        """Async context manager holding the conversation's lock."""
        ...

    async def close(self) -> None:
        return None


class InMemoryConversationLocks(ConversationLocks):
    """
    Locks are reference-counted and dropped once nobody holds or waits on
    them, so idle conversations cost nothing.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[conversation_id] -= 1
            if self._users[conversation_id] == 0:
                del self._users[conversation_id]
                del self._locks[conversation_id]

    def held(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return bool(lock and lock.locked())


class RedisConversationLocks(ConversationLocks):
    """Distributed lock; the lease frees the lock if its holder crashes."""

    KEY_PREFIX = "converse_flows:lock:"

    def __init__(self, redis_url: str = "redis://localhost:6379",
                 lease_seconds: float = 30.0, wait_seconds: float = 10.0):
        self._redis_url = redis_url
        self._redis = None
        self.lease_seconds = lease_seconds
        self.wait_seconds = wait_seconds

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("redis_locks_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        from redis.exceptions import LockError

        if self._redis is None:
            await self.connect()
        lock = self._redis.lock(
            f"{self.KEY_PREFIX}{conversation_id}",
            timeout=self.lease_seconds,
            blocking_timeout=self.wait_seconds,
        )
        if not await lock.acquire():
            raise LockTimeout(conversation_id, self.wait_seconds)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # lease expired mid-run; compare-and-set still guards the state
                logger.warning("lock_lease_expired", conversation_id=conversation_id, error=str(e))


def create_locks(config: dict = None) -> ConversationLocks:
    """
    Factory keyed on locks.backend: "memory" | "redis".
    """
    config = config or {}
    if config.get("backend", "memory") == "redis":
        logger.info("locks_created", backend="redis")
        return RedisConversationLocks(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            lease_seconds=float(config.get("lease_seconds", 30.0)),
            wait_seconds=float(config.get("wait_seconds", 10.0)),
        )
    logger.info("locks_created", backend="memory")
    return InMemoryConversationLocks()
