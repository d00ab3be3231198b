import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000


@dataclass
class KeyListPage:
    keys: List[str] = field(default_factory=list)
    # None when the listing is complete
    cursor: Optional[str] = None


class KeyValueStore(ABC):
    """
    Minimal TTL key-value contract used for sessions, rate counters and
    the schema cache. Values are JSON strings.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def list(self, prefix: str, cursor: Optional[str] = None) -> KeyListPage: ...

    async def aclose(self) -> None:
        return None


class MemoryKeyValueStore(KeyValueStore):
    """
    Process-local store for development and tests. Honours TTLs lazily.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        # key -> (value, expires_at or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: str, cursor: Optional[str] = None) -> KeyListPage:
        keys = sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None)
        start = int(cursor) if cursor else 0
        page = keys[start:start + LIST_PAGE_SIZE]
        end = start + len(page)
        return KeyListPage(keys=page, cursor=str(end) if end < len(keys) else None)


class RedisKeyValueStore(KeyValueStore):
    def __init__(self, url: str) -> None:
        self._client: aioredis.Redis = aioredis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._client.set(key, value, ex=ttl_seconds or None)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def list(self, prefix: str, cursor: Optional[str] = None) -> KeyListPage:
        next_cursor, keys = await self._client.scan(
            cursor=int(cursor) if cursor else 0,
            match=f"{prefix}*",
            count=LIST_PAGE_SIZE,
        )
        return KeyListPage(keys=list(keys), cursor=str(next_cursor) if int(next_cursor) != 0 else None)

    async def aclose(self) -> None:
        await self._client.aclose()


def create_kv_store(url: str, clock: Callable[[], float] = time.time) -> KeyValueStore:
    if url.startswith("memory://"):
        logger.info("Using in-memory key-value store")
        return MemoryKeyValueStore(clock)
    if url.startswith(("redis://", "rediss://", "unix://")):
        logger.info("Using Redis key-value store")
        return RedisKeyValueStore(url)
    raise ValueError(f"Unsupported KV_URL scheme: {url}")
