"""Per-IP token bucket for the webhook endpoint.

Buckets live in Redis so every replica shares them. When Redis cannot be
reached the limiter keeps working from a process-local bucket instead of
failing the delivery.
"""

from time import time

import redis

from docpay.common.logging import logger


BUCKET_TTL_SECONDS = 120


class TokenBucketLimiter:
    """Capacity and refill rate are both `limit_per_minute`."""

    def __init__(self, rdb: redis.Redis | None, limit_per_minute: int, prefix: str = "ratelimit:webhook") -> None:
        self.rdb = rdb
        self.capacity = float(limit_per_minute)
        self.refill_per_sec = self.capacity / 60.0
        self.prefix = prefix
        self._local: dict[str, tuple[float, float]] = {}

    def _refill(self, tokens: float | None, updated_at: float | None, now: float) -> float:
        tokens = tokens if tokens is not None else self.capacity
        updated_at = updated_at if updated_at is not None else now
        return min(self.capacity, tokens + max(0.0, now - updated_at) * self.refill_per_sec)

    def allow(self, client_id: str) -> bool:
        """Take one token for `client_id`; False when the bucket is empty."""

        now = time()
        if self.rdb is not None:
            try:
                return self._allow_redis(client_id, now)
            except redis.RedisError as exc:
                logger.warning("rate_limit_redis_unavailable client=%s error=%s", client_id, exc)
        return self._allow_local(client_id, now)

    def _allow_redis(self, client_id: str, now: float) -> bool:
        key = f"{self.prefix}:{client_id}"
        values = self.rdb.hmget(key, "tokens", "updated_at")
        tokens = self._refill(
            float(values[0]) if values[0] is not None else None,
            float(values[1]) if values[1] is not None else None,
            now,
        )
        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        self.rdb.expire(key, BUCKET_TTL_SECONDS)
        return allowed

    def _allow_local(self, client_id: str, now: float) -> bool:
        tokens, updated_at = self._local.get(client_id, (None, None))
        tokens = self._refill(tokens, updated_at, now)
        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self._local[client_id] = (tokens, now)
        return allowed
