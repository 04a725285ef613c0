from __future__ import annotations
import hashlib
import time
from dataclasses import dataclass

import redis.asyncio as redis


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> dict[str, str]:
        if self.limit <= 0:
            return {}
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


UNLIMITED = RateLimitResult(allowed=True, limit=0, remaining=0, reset_seconds=0)


def feed_rate_key(slug: str, token: str) -> str:
    # never put the raw feed token into redis keys
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
    return f"feed:{slug.lower().strip()}:{digest}"


class FeedRateLimiter:
    """
    Fixed-window request counter per (portal slug, feed token).
    Portals re-poll on a schedule; the window only stops runaway crawlers.
    """

    def __init__(self, redis_url: str, *, window_seconds: int = 60):
        self.r = redis.from_url(redis_url, decode_responses=True)
        self.window_seconds = window_seconds

    async def check(self, *, slug: str, token: str, limit: int) -> RateLimitResult:
        if limit <= 0:
            return UNLIMITED

        now = int(time.time())
        window = now // self.window_seconds
        rkey = f"rl:{feed_rate_key(slug, token)}:{window}"

        # INCR and EXPIRE travel together so a crash never leaves a key without TTL
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.incr(rkey)
            pipe.expire(rkey, self.window_seconds)
            count, _ = await pipe.execute()

        return RateLimitResult(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=self.window_seconds - (now % self.window_seconds),
        )

    async def aclose(self) -> None:
        await self.r.aclose()
