import json
import random
from typing import Any

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()

JITTER_RATIO = 0.1


def with_jitter(seconds: int) -> int:
    """Spread expiry by +/-10% so entries written together do not expire together."""
    jitter = seconds * JITTER_RATIO * random.uniform(-1.0, 1.0)
    return max(1, int(round(seconds + jitter)))


def job_generation_key(owner_id: str) -> str:
    return f"jobs:gen:{owner_id}"


def job_list_key(owner_id: str, generation: int = 0) -> str:
    return f"jobs:list:{owner_id}:{generation}"


def job_item_key(owner_id: str, job_id, generation: int = 0) -> str:
    return f"jobs:item:{owner_id}:{generation}:{job_id}"


def object_head_key(key: str) -> str:
    return f"s3:head:{key}"


class Cache:
    """Best-effort JSON cache on Redis.

    Every operation degrades to a miss or a no-op when the backend is missing
    or unreachable. Nothing here raises to the caller.

    Job views are keyed by a per-owner generation counter. A mutation bumps
    the counter, so a view built from a row read before the bump lands under
    a generation no reader asks for again.
    """

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str | None, socket_timeout: float = 0.25) -> "Cache":
        if not url:
            logger.info("cache_disabled")
            return cls(None)
        client = redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def get(self, key: str) -> Any | None:
        if self.client is None:
            return None
        try:
            raw = await self.client.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except (RedisError, OSError, ValueError) as e:
            logger.warning("cache_get_failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self.client is None:
            return
        try:
            payload = json.dumps(value)
            await self.client.set(key, payload, ex=with_jitter(ttl_seconds))
        except (RedisError, OSError, TypeError, ValueError) as e:
            logger.warning("cache_set_failed", key=key, error=str(e))

    async def delete(self, *keys: str) -> None:
        if self.client is None or not keys:
            return
        try:
            await self.client.delete(*keys)
        except (RedisError, OSError) as e:
            logger.warning("cache_delete_failed", keys=list(keys), error=str(e))

    async def generation(self, owner_id: str) -> int | None:
        """Current view generation for an owner, or None when views must not be cached."""
        if self.client is None:
            return None
        try:
            raw = await self.client.get(job_generation_key(owner_id))
            return int(raw) if raw is not None else 0
        except (RedisError, OSError, ValueError) as e:
            logger.warning("cache_generation_failed", owner_id=owner_id, error=str(e))
            return None

    async def invalidate_job(self, owner_id: str, job_id) -> None:
        """Retire the owner's cached views and drop the superseded entries."""
        if self.client is None:
            return
        try:
            generation = await self.client.incr(job_generation_key(owner_id))
        except (RedisError, OSError) as e:
            logger.warning("cache_invalidate_failed", owner_id=owner_id, job_id=str(job_id), error=str(e))
            return
        await self.delete(job_item_key(owner_id, job_id, generation - 1), job_list_key(owner_id, generation - 1))

    async def close(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.aclose()
        except (RedisError, OSError) as e:
            logger.warning("cache_close_failed", error=str(e))
