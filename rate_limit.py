"""
Admission rate limiting for job submission.

Two interchangeable backends:
  - InMemoryRateLimiter: fixed window per key, single process only.
  - RedisRateLimiter: sliding window on a Redis sorted set, shared by every
    API instance. Each key gets a set `ratelimit:{key}` whose members are
    request timestamps; entries older than the window are trimmed first.
"""

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import redis

from config import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS, REDIS_URL


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter:
    def check(self, key: str) -> RateLimitDecision:
        raise NotImplementedError


class InMemoryRateLimiter(RateLimiter):
    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + self.window_seconds

            if count >= self.max_requests:
                retry_after = max(1, math.ceil(reset_at - now))
                logging.warning(f"Rate limit exceeded for {key}: {count}/{self.max_requests}")
                return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

            count += 1
            self._windows[key] = (count, reset_at)
            return RateLimitDecision(allowed=True, remaining=self.max_requests - count)


class RedisRateLimiter(RateLimiter):
    def __init__(
        self,
        redis_client,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    ):
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def check(self, key: str) -> RateLimitDecision:
        now = time.time()
        window_start = now - self.window_seconds
        redis_key = f"ratelimit:{key}"

        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, window_start)
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        _, current_count, oldest_entries = pipe.execute()

        if current_count >= self.max_requests:
            if oldest_entries:
                oldest_score = oldest_entries[0][1]
                retry_after = int(oldest_score + self.window_seconds - now) + 1
            else:
                retry_after = self.window_seconds
            logging.warning(f"Rate limit exceeded for {key}: {current_count}/{self.max_requests}")
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

        pipe = self.redis.pipeline(transaction=True)
        pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.expire(redis_key, self.window_seconds + 60)
        pipe.execute()

        return RateLimitDecision(allowed=True, remaining=self.max_requests - current_count - 1)


_default_limiter = None


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter: Redis-backed when REDIS_URL is configured."""
    global _default_limiter
    if _default_limiter is None:
        if REDIS_URL:
            _default_limiter = RedisRateLimiter(redis.Redis.from_url(REDIS_URL))
        else:
            _default_limiter = InMemoryRateLimiter()
    return _default_limiter
