# medreminder/limiter.py
# Sliding-window rate limiter backed by a redis sorted set per bucket key.
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis

logger = logging.getLogger(__name__)

# Extra lifetime on a bucket key so abandoned keys expire on their own
TTL_BUFFER_MS = 60_000


@dataclass(frozen=True)
class RateLimitRule:
    window_ms: int
    max_requests: int
    key_prefix: str


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at_ms: int


RATE_LIMIT_BUCKETS: Dict[str, RateLimitRule] = {
    "general": RateLimitRule(window_ms=15 * 60 * 1000, max_requests=100, key_prefix="rl:general"),
    "auth": RateLimitRule(window_ms=15 * 60 * 1000, max_requests=5, key_prefix="rl:auth"),
    "messaging": RateLimitRule(window_ms=60 * 60 * 1000, max_requests=50, key_prefix="rl:messaging"),
    "admin": RateLimitRule(window_ms=15 * 60 * 1000, max_requests=200, key_prefix="rl:admin"),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Fail-open sliding window limiter.

    Every check runs one MULTI/EXEC pipeline (add, prune, count, refresh TTL),
    so concurrent callers on different workers see a consistent count.
    A rejected call removes its own entry again: only accepted calls use up
    the window.
    """

    def __init__(
        self,
        redis_client: Optional["redis.Redis"],
        rule: RateLimitRule,
        clock: Callable[[], int] = _now_ms,
    ):
        self.redis = redis_client
        self.rule = rule
        self.clock = clock

    def _key(self, key: str) -> str:
        return f"{self.rule.key_prefix}:{key}"

    def check(self, key: str) -> RateLimitResult:
        now = self.clock()
        reset_at = now + self.rule.window_ms
        if self.redis is None:
            return RateLimitResult(True, self.rule.max_requests, reset_at)

        bucket = self._key(key)
        member = f"{now}-{uuid.uuid4().hex}"
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.zadd(bucket, {member: now})
            pipe.zremrangebyscore(bucket, "-inf", f"({now - self.rule.window_ms}")
            pipe.zcard(bucket)
            pipe.pexpire(bucket, self.rule.window_ms + TTL_BUFFER_MS)
            results = pipe.execute()
            count = int(results[2])
            if count > self.rule.max_requests:
                self.redis.zrem(bucket, member)
                return RateLimitResult(False, 0, reset_at)
            return RateLimitResult(True, self.rule.max_requests - count, reset_at)
        except redis.RedisError as exc:
            logger.warning("Rate limit store unavailable for %s, allowing request: %s", bucket, exc)
            return RateLimitResult(True, self.rule.max_requests, reset_at)

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def remaining(self, key: str) -> int:
        if self.redis is None:
            return self.rule.max_requests
        now = self.clock()
        bucket = self._key(key)
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.zremrangebyscore(bucket, "-inf", f"({now - self.rule.window_ms}")
            pipe.zcard(bucket)
            results = pipe.execute()
            return max(0, self.rule.max_requests - int(results[1]))
        except redis.RedisError as exc:
            logger.warning("Rate limit store unavailable for %s: %s", bucket, exc)
            return self.rule.max_requests


def messaging_rule(settings) -> RateLimitRule:
    return RateLimitRule(
        window_ms=settings.messaging_rate_window_seconds * 1000,
        max_requests=settings.messaging_rate_limit,
        key_prefix=RATE_LIMIT_BUCKETS["messaging"].key_prefix,
    )
