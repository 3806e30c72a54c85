# /talkflow/utils/talk_lock.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List

from redis.exceptions import LockError

# Per-Talk mutual exclusion for command handlers. Two commands for the same
# Talk never run at the same time, so step transitions cannot interleave.

logger = logging.getLogger(__name__)


class TalkLockTimeout(Exception):
    """The lock for a Talk could not be acquired in time; the command should be redelivered."""


class LocalTalkLock:
    """asyncio locks keyed by Talk id. Only serializes within one process."""

    def __init__(self):
        # talk_id -> [lock, holders and waiters]
        self._locks: Dict[str, List] = {}

    @asynccontextmanager
    async def hold(self, talk_id: str) -> AsyncIterator[None]:
        entry = self._locks.setdefault(talk_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(talk_id, None)


class RedisTalkLock:
    """Redis-backed lock shared by every worker process pointed at the same Redis."""

    def __init__(self, redis_client, timeout: int = 120, blocking_timeout: float = 30.0, prefix: str = "talkflow:talk-lock"):
        self.redis = redis_client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.prefix = prefix

    @asynccontextmanager
    async def hold(self, talk_id: str) -> AsyncIterator[None]:
        lock = self.redis.lock(f"{self.prefix}:{talk_id}", timeout=self.timeout, blocking_timeout=self.blocking_timeout)
        if not await lock.acquire():
            raise TalkLockTimeout(f"Could not lock talk {talk_id} within {self.blocking_timeout}s")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Expired while the handler was still running
                logger.warning(f"Talk lock for {talk_id} was lost before release: {e}")
