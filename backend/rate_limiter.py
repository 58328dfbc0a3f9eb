import asyncio
import time
from typing import Dict, List

from fastapi import Request

from errors import RateLimitExceededError


class InMemoryRateLimiter:
    def __init__(self):
        self._buckets: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()

    async def check(self, key: str, limit: int, window_seconds: int) -> None:
        now = time.time()
        threshold = now - window_seconds
        async with self._lock:
            events = [t for t in self._buckets.get(key, []) if t > threshold]
            if len(events) >= limit:
                self._buckets[key] = events
                raise RateLimitExceededError()
            events.append(now)
            self._buckets[key] = events

    def reset(self) -> None:
        self._buckets.clear()


rate_limiter = InMemoryRateLimiter()


def extract_request_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return request.client.host if request.client else "unknown"


async def ensure_rate_limit(identity: str, bucket: str, limit: int) -> None:
    await rate_limiter.check(f"{bucket}:{identity}", limit=limit, window_seconds=60)
