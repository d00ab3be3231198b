import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from cypher_mcp.config import SCHEMA_CACHE_PREFIX
from cypher_mcp.storage.kv import KeyValueStore

SchemaDict = Dict[str, Any]


class SchemaCache:
    """
    Per-connection schema cache on the key-value store.

    Failures here are logged and swallowed: a cold cache only costs an
    extra extraction, it must never fail the request.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        ttl: int,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kv = kv
        self.ttl = ttl
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _key(connection_id: str) -> str:
        return f"{SCHEMA_CACHE_PREFIX}{connection_id}"

    async def get(self, connection_id: str) -> Optional[SchemaDict]:
        key = self._key(connection_id)
        try:
            raw = await self.kv.get(key)
            if not raw:
                return None
            cached = json.loads(raw)
            if cached.get("expiresAt", 0) < int(self._clock() * 1000):
                await self.kv.delete(key)
                return None
            self.logger.debug("Schema cache hit connection=%s", connection_id)
            return cached["schema"]
        except Exception as e:
            self.logger.warning("Failed to read schema cache connection=%s: %s", connection_id, e)
            return None

    async def put(self, connection_id: str, schema: SchemaDict, ttl: int | None = None) -> None:
        ttl = ttl or self.ttl
        now = int(self._clock() * 1000)
        payload = {"schema": schema, "cachedAt": now, "expiresAt": now + ttl * 1000}
        try:
            await self.kv.put(self._key(connection_id), json.dumps(payload, default=str), ttl)
            self.logger.debug("Schema cached connection=%s ttl=%s", connection_id, ttl)
        except Exception as e:
            self.logger.warning("Failed to cache schema connection=%s: %s", connection_id, e)

    async def invalidate(self, connection_id: str) -> None:
        try:
            await self.kv.delete(self._key(connection_id))
            self.logger.debug("Schema cache invalidated connection=%s", connection_id)
        except Exception as e:
            self.logger.warning("Failed to invalidate schema cache connection=%s: %s", connection_id, e)

    async def get_or_fetch(
        self,
        connection_id: str,
        fetch: Callable[[], Awaitable[SchemaDict]],
        ttl: int | None = None,
    ) -> SchemaDict:
        cached = await self.get(connection_id)
        if cached is not None:
            return cached
        schema = await fetch()
        await self.put(connection_id, schema, ttl)
        return schema
