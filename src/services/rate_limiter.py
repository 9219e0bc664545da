"""
Per-user Rate Limiter.

Throttles the stages that call paid providers. Each endpoint has a fixed
call budget per rolling window, checked before any work is done. Two
backends are supported: the database ``check_rate_limit`` procedure and a
Redis sorted-set sliding window for deployments that run one.

A broken limiter never takes the pipeline down: backend failures are logged
and the call is allowed.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Optional

import redis.asyncio as aioredis

from src.config import RateLimitBackend, Settings, get_settings
from src.db import DatabaseClient, get_db
from src.errors import RateLimited
from src.logging_config import get_logger

logger = get_logger(__name__)

# Redis key: one sorted set of call timestamps per user and endpoint
RATE_LIMIT_KEY = "ratelimit:{}:{}"

RATE_LIMITED_MESSAGE = "Rate limit exceeded. Please try again later."


class Endpoint(str, Enum):
    TRANSCRIBE = "transcribe-voice-intake"
    EXTRACT = "extract-quote-data"
    CREATE_DRAFT = "create-draft-quote"


class RateLimiter:
    """Checks and records calls against per-endpoint budgets."""

    def __init__(self, settings: Settings | None = None, db: DatabaseClient | None = None) -> None:
        self.settings = settings or get_settings()
        self._db = db
        self._redis: Optional[aioredis.Redis] = None

    @property
    def db(self) -> DatabaseClient:
        if self._db is None:
            self._db = get_db()
        return self._db

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        return self._redis

    async def close(self) -> None:
        if self._redis:
            await self._redis.close()
            self._redis = None

    def budget(self, endpoint: Endpoint) -> int:
        return {
            Endpoint.TRANSCRIBE: self.settings.rate_limit_transcribe,
            Endpoint.EXTRACT: self.settings.rate_limit_extract,
            Endpoint.CREATE_DRAFT: self.settings.rate_limit_create_draft,
        }[endpoint]

    async def check(self, user_id: str, endpoint: Endpoint) -> dict[str, Any]:
        """Record one call and return the limiter verdict (``allowed`` plus backend details)."""
        max_calls = self.budget(endpoint)
        window = self.settings.rate_limit_window_minutes
        if self.settings.rate_limit_backend == RateLimitBackend.REDIS:
            return await self._check_redis(user_id, endpoint.value, max_calls, window)
        return await self.db.check_rate_limit(user_id, endpoint.value, max_calls, window)

    async def _check_redis(self, user_id: str, endpoint: str, max_calls: int, window_minutes: int) -> dict[str, Any]:
        key = RATE_LIMIT_KEY.format(endpoint, user_id)
        now = time.time()
        window_seconds = window_minutes * 60

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now - window_seconds)
            pipe.zcard(key)
            _, current = await pipe.execute()

        if current >= max_calls:
            return {"allowed": False, "current_count": current, "max_calls": max_calls, "window_minutes": window_minutes}

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.expire(key, window_seconds)
            await pipe.execute()

        return {"allowed": True, "current_count": current + 1, "max_calls": max_calls, "window_minutes": window_minutes}

    async def enforce(self, user_id: str, endpoint: Endpoint) -> None:
        """
        Raise if ``user_id`` has exhausted the budget for ``endpoint``.

        Raises:
            RateLimited: the budget is exhausted; carries the limiter payload.
        """
        try:
            result = await self.check(user_id, endpoint)
        except Exception as e:
            # Fail open: a limiter outage must not block quoting
            logger.error(
                "rate_limit_check_failed",
                user_id=user_id,
                endpoint=endpoint.value,
                backend=self.settings.rate_limit_backend.value,
                error=str(e),
            )
            return

        if result and not result.get("allowed", True):
            logger.warning("rate_limit_exceeded", user_id=user_id, endpoint=endpoint.value)
            raise RateLimited(RATE_LIMITED_MESSAGE, rate_limit=result)


_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = RateLimiter()
    return _limiter
