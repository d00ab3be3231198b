import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from cypher_mcp.config import RATE_LIMIT_PREFIX
from cypher_mcp.storage.kv import KeyValueStore


@dataclass
class RateLimitResult:
    allowed: bool
    current: int
    limit: int
    remaining: int
    # seconds until the current window closes
    reset_in: int


def rate_limit_identity(headers: Mapping[str, str], user_id: Optional[str] = None) -> str:
    """
    Authenticated user > first X-Forwarded-For hop > "anonymous".
    """
    if user_id:
        return f"user:{user_id}"
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
        if ip:
            return f"ip:{ip}"
    return "anonymous"


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_in),
    }


class RateLimiter:
    """
    Fixed-window counter on the key-value store.

    The stored entry is {"count", "window"} under rate:{identity}. Blocked
    calls are not written back, so a caller hammering the endpoint cannot
    grow the counter. Storage errors fail open.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kv = kv
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)

    async def check_and_increment(self, identity: str, max_requests: int, window_seconds: int) -> RateLimitResult:
        key = f"{RATE_LIMIT_PREFIX}{identity}"
        now = math.floor(self._clock())
        window = (now // window_seconds) * window_seconds

        try:
            count = 1
            raw = await self.kv.get(key)
            if raw:
                entry = json.loads(raw)
                if entry.get("window") == window:
                    count = int(entry.get("count", 0)) + 1

            allowed = count <= max_requests
            if allowed:
                await self.kv.put(key, json.dumps({"count": count, "window": window}), window_seconds * 2)
        except Exception as e:
            self.logger.error("Rate limit check failed for %s...: %s", identity[:8], e)
            return RateLimitResult(
                allowed=True,
                current=0,
                limit=max_requests,
                remaining=max_requests,
                reset_in=window_seconds,
            )

        reset_in = max(0, window + window_seconds - now)
        result = RateLimitResult(
            allowed=allowed,
            current=count,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_in=reset_in,
        )
        if not allowed:
            self.logger.warning(
                "Rate limit exceeded identity=%s... current=%s limit=%s reset_in=%s",
                identity[:8],
                count,
                max_requests,
                reset_in,
            )
        return result
