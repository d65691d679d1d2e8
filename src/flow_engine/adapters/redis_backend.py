"""
Redis-backed run lock and resume scheduler for multi-worker deployments.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

import redis.asyncio as redis

from ..core.errors import RunLockedError
from ..core.interface import ResumeScheduler, RunLock

logger = logging.getLogger(__name__)

# Delete the key only if it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Extend the key's expiry only if it still holds our token
RENEW_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class RedisRunLock(RunLock):
    """
    Lease per run: SET NX PX with a random token, compare-and-delete release.

    While a holder is inside `hold`, a background task re-extends the lease
    every third of its TTL, so API nodes that wait minutes cannot let it
    lapse mid-invocation. A crashed worker stops renewing and the lease
    expires after one TTL.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: float = 60, prefix: str = "flow_engine:lock"):
        self.client = client
        self.ttl_ms = int(ttl_seconds * 1000)
        self.prefix = prefix
        self._release = client.register_script(RELEASE_SCRIPT)
        self._renew = client.register_script(RENEW_SCRIPT)

    def _key(self, run_id: str) -> str:
        return f"{self.prefix}:{run_id}"

    async def acquire(self, run_id: str) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self.client.set(self._key(run_id), token, nx=True, px=self.ttl_ms)
        return token if acquired else None

    async def renew(self, run_id: str, token: str) -> bool:
        """Push the lease expiry one TTL ahead. False when the lease was lost."""
        return bool(await self._renew(keys=[self._key(run_id)], args=[token, self.ttl_ms]))

    async def release(self, run_id: str, token: str) -> None:
        released = await self._release(keys=[self._key(run_id)], args=[token])
        if not released:
            logger.warning(f"Lock for run {run_id} expired before release")

    async def _keep_alive(self, run_id: str, token: str):
        interval = self.ttl_ms / 3000
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.renew(run_id, token):
                    logger.error(f"Lost lock for run {run_id}; another worker may take it over")
                    return
            except redis.RedisError as e:
                logger.warning(f"Could not renew lock for run {run_id}: {e}")

    @asynccontextmanager
    async def hold(self, run_id: str) -> AsyncIterator[str]:
        token = await self.acquire(run_id)
        if token is None:
            raise RunLockedError(f"Run {run_id} is being processed by another worker")

        keep_alive = asyncio.create_task(self._keep_alive(run_id, token))
        try:
            yield token
        finally:
            keep_alive.cancel()
            try:
                await keep_alive
            except asyncio.CancelledError:
                pass
            await self.release(run_id, token)


class RedisResumeScheduler(ResumeScheduler):
    """Due times kept in a sorted set scored by epoch seconds."""

    def __init__(self, client: redis.Redis, key: str = "flow_engine:resume_at"):
        self.client = client
        self.key = key

    async def schedule_resume(self, run_id: str, resume_at: datetime) -> None:
        if resume_at.tzinfo is None:
            resume_at = resume_at.replace(tzinfo=timezone.utc)
        await self.client.zadd(self.key, {run_id: resume_at.timestamp()})

    async def cancel_resume(self, run_id: str) -> None:
        await self.client.zrem(self.key, run_id)

    async def claim_due_runs(self, now: datetime, limit: int = 100) -> List[str]:
        candidates = await self.client.zrangebyscore(self.key, "-inf", now.timestamp(), start=0, num=limit)
        claimed = []
        for member in candidates:
            run_id = member.decode() if isinstance(member, bytes) else member
            # ZREM returns 1 for exactly one claimant
            if await self.client.zrem(self.key, run_id):
                claimed.append(run_id)
        return claimed
