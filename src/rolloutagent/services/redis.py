import json
import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "rollout-agent:"


class RedisStore:
    """Namespaced async key/value access to Redis.

    Read and write failures are logged and reported as None/False so that a
    Redis outage degrades persistence instead of failing an analysis.
    """

    def __init__(self, url: str, prefix: str = KEY_PREFIX) -> None:
        self._url = url
        self._prefix = prefix
        self._client: Redis | None = None

    def key(self, name: str) -> str:
        return f"{self._prefix}{name}"

    async def connect(self) -> None:
        """Open and ping the connection. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def get(self, name: str) -> str | None:
        if self._client is None:
            return None
        try:
            value = await self._client.get(self.key(name))
            return value if value is None else str(value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", name, e)
            return None

    async def set(self, name: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Store value; with a positive ttl_seconds the key expires."""
        if self._client is None:
            return False
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.setex(self.key(name), ttl_seconds, value)
            else:
                await self._client.set(self.key(name), value)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", name, e)
            return False

    async def delete(self, name: str) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.delete(self.key(name))
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", name, e)
            return False

    async def get_json(self, name: str) -> Any | None:
        """Decode a stored JSON document, or None if missing or unreadable."""
        raw = await self.get(name)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON stored under %s: %s", name, e)
            return None

    async def set_json(self, name: str, value: Any, ttl_seconds: int | None = None) -> bool:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning("Cannot serialize value for %s: %s", name, e)
            return False
        return await self.set(name, payload, ttl_seconds=ttl_seconds)


def get_redis_store() -> RedisStore | None:
    """A RedisStore for the configured redis_url, or None when Redis is not configured."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisStore(settings.redis_url.strip())
