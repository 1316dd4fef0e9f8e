"""
String-keyed blob stores used for snapshot and cache persistence.

RedisBlobStore connects lazily and tests the connection on first use. In
production a failed connection is fatal; in development it falls back to
process memory so the service still starts without Redis.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import redis
import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Minimal async key-value interface over string blobs"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        pass

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        pass

    async def close(self) -> None:
        pass


class InMemoryBlobStore(BlobStore):
    """Process-local store for tests and single-process development"""

    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    async def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class RedisBlobStore(BlobStore):
    def __init__(self, redis_url: str, app_env: str = "development", client: aioredis.Redis = None):
        self.redis_url = redis_url
        self.app_env = app_env
        self._client = client
        self._connection_tested = client is not None
        self._fallback: Optional[InMemoryBlobStore] = None

    def _display_url(self) -> str:
        return self.redis_url.split('@')[-1] if '@' in self.redis_url else self.redis_url

    async def _backend(self) -> Optional[BlobStore]:
        """Return the in-memory fallback when Redis is unusable, else None."""
        if self._fallback is not None:
            return self._fallback
        if self._client is None:
            self._client = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        if not self._connection_tested:
            try:
                await self._client.ping()
            except (redis.RedisError, OSError) as e:
                logger.error(f"Redis connection failed: {e}")
                if self.app_env == "production":
                    logger.critical("FATAL: Redis connection failed in production environment. Refusing to run without durable state.")
                    raise RuntimeError(f"Redis connection failed in production: {e}") from e
                logger.warning("Falling back to in-memory blob store (state will not survive restarts)")
                self._fallback = InMemoryBlobStore()
                return self._fallback
            self._connection_tested = True
            logger.info(f"Redis connection established: {self._display_url()}")
        return None

    async def get(self, key: str) -> Optional[str]:
        fallback = await self._backend()
        if fallback is not None:
            return await fallback.get(key)
        return await self._client.get(key)

    async def set(self, key: str, value: str) -> None:
        fallback = await self._backend()
        if fallback is not None:
            await fallback.set(key, value)
            return
        await self._client.set(key, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        fallback = await self._backend()
        if fallback is not None:
            return await fallback.delete(*keys)
        return await self._client.delete(*keys)

    async def keys(self, prefix: str = "") -> List[str]:
        fallback = await self._backend()
        if fallback is not None:
            return await fallback.keys(prefix)
        found = [key async for key in self._client.scan_iter(match=_escape_glob(prefix) + "*")]
        return sorted(found)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._connection_tested = False


def _escape_glob(text: str) -> str:
    return "".join("\\" + ch if ch in "*?[]\\" else ch for ch in text)


def create_blob_store(settings) -> BlobStore:
    """Build the configured blob store backend."""
    if settings.STORE_BACKEND == "redis":
        logger.info("Using Redis blob store")
        return RedisBlobStore(settings.REDIS_URL, app_env=settings.APP_ENV)
    logger.info("Using in-memory blob store")
    return InMemoryBlobStore()
