import json
import logging
from typing import Any, Optional

import redis
import redis.asyncio as aioredis

from app.core.config import settings

logger = logging.getLogger(__name__)


def progress_key(exam_id: str, student_id: str) -> str:
    """Latest progress snapshot of one (exam, student) scope"""
    return f"progress:{exam_id}:{student_id}"


SLOW_REQUESTS_KEY = "slow_requests"
SYSTEM_HEALTH_KEY = "system_health"


class CacheManager:
    """Redis-backed store for proctoring state, usable from sync and async code.

    Keys are namespaced with ``key_prefix``. Values are JSON. ``set`` expires
    after a TTL; ``persist`` stores without expiry (client session anchors and
    violation counters must outlive any TTL). Every operation degrades to a
    logged miss when redis is unreachable.
    """

    def __init__(self, redis_url: Optional[str] = None, key_prefix: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self.key_prefix = settings.cache_key_prefix if key_prefix is None else key_prefix
        self.default_ttl = settings.cache_default_ttl

        self._sync_client: Optional[redis.Redis] = None
        self._async_client: Optional[aioredis.Redis] = None

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @property
    def sync_client(self) -> redis.Redis:
        if self._sync_client is None:
            self._sync_client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True
            )
        return self._sync_client

    async def get_async_client(self) -> aioredis.Redis:
        if self._async_client is None:
            client = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            try:
                await client.ping()
            except Exception as e:
                logger.error(f"Redis at {self.redis_url} unreachable: {e}")
                raise
            self._async_client = client
        return self._async_client

    def _drop_async_client(self, error: Exception):
        # a dead connection is rebuilt on the next call
        message = str(error).lower()
        if "connection" in message or "timeout" in message:
            self._async_client = None

    @staticmethod
    def _dump(value: Any) -> str:
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning(f"Value is not JSON serializable, storing its repr: {e}")
            return json.dumps(str(value))

    @staticmethod
    def _load(raw: Optional[str]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Non-JSON value in cache: {raw!r}")
            return raw

    # sync

    def get(self, key: str) -> Optional[Any]:
        try:
            return self._load(self.sync_client.get(self._key(key)))
        except Exception as e:
            logger.error(f"Cache get failed for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            return bool(self.sync_client.setex(self._key(key), ttl or self.default_ttl, self._dump(value)))
        except Exception as e:
            logger.error(f"Cache set failed for {key}: {e}")
            return False

    def persist(self, key: str, value: Any) -> bool:
        try:
            return bool(self.sync_client.set(self._key(key), self._dump(value)))
        except Exception as e:
            logger.error(f"Cache persist failed for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            return bool(self.sync_client.delete(self._key(key)))
        except Exception as e:
            logger.error(f"Cache delete failed for {key}: {e}")
            return False

    def health_check(self) -> bool:
        try:
            return bool(self.sync_client.ping())
        except Exception:
            return False

    # async

    async def aget(self, key: str) -> Optional[Any]:
        try:
            client = await self.get_async_client()
            return self._load(await client.get(self._key(key)))
        except Exception as e:
            logger.error(f"Async cache get failed for {key}: {e}")
            self._drop_async_client(e)
            return None

    async def aset(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            client = await self.get_async_client()
            return bool(await client.setex(self._key(key), ttl or self.default_ttl, self._dump(value)))
        except Exception as e:
            logger.error(f"Async cache set failed for {key}: {e}")
            self._drop_async_client(e)
            return False

    async def adelete(self, key: str) -> bool:
        try:
            client = await self.get_async_client()
            return bool(await client.delete(self._key(key)))
        except Exception as e:
            logger.error(f"Async cache delete failed for {key}: {e}")
            self._drop_async_client(e)
            return False

    async def ahealth_check(self) -> bool:
        try:
            client = await self.get_async_client()
            return bool(await client.ping())
        except Exception as e:
            logger.warning(f"Cache health check failed: {e}")
            return False

    async def aclose(self):
        client, self._async_client = self._async_client, None
        if client is not None:
            await client.close()
        sync_client, self._sync_client = self._sync_client, None
        if sync_client is not None:
            sync_client.close()


cache = CacheManager()
