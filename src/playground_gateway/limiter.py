"""Admission limiter: fixed-window request counting per client.

Each client key gets ``limit`` requests per ``window_seconds``. The first
request opens a window; the ``limit + 1``-th request inside it is rejected
with the seconds left until the window resets. Counters live in a pluggable
store: in process memory (single worker) or Redis (shared across workers).
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional
from urllib.parse import urlparse

import redis.asyncio as aioredis

from .exceptions import RateLimitExceededError
from .observability import global_metrics

if TYPE_CHECKING:
    from fastapi import Request

    from .config import PlaygroundSettings

logger = logging.getLogger(__name__)


@dataclass
class RateLimitRecord:
    client_key: str
    window_count: int
    window_reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int


def client_key_from(request: "Request") -> str:
    """First ``X-Forwarded-For`` hop, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


# ── Stores ───────────────────────────────────────────────────────────────────

class RateLimitStore(ABC):
    @abstractmethod
    async def increment(self, key: str, window_seconds: float, now: float) -> RateLimitRecord:
        """Count one request against ``key``, opening a new window if needed."""

    async def purge_expired(self, now: float) -> int:
        return 0

    async def close(self) -> None:
        pass


class MemoryRateLimitStore(RateLimitStore):
    """Per-process counters. Correct only with a single worker."""

    def __init__(self) -> None:
        self._records: dict[str, RateLimitRecord] = {}

    async def increment(self, key: str, window_seconds: float, now: float) -> RateLimitRecord:
        record = self._records.get(key)
        if record is None or now >= record.window_reset_at:
            record = RateLimitRecord(key, 0, now + window_seconds)
            self._records[key] = record
        record.window_count += 1
        return record

    async def purge_expired(self, now: float) -> int:
        stale = [k for k, r in self._records.items() if now >= r.window_reset_at]
        for key in stale:
            del self._records[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)


class RedisRateLimitStore(RateLimitStore):
    """Shared counters: ``INCR`` then ``PEXPIRE`` on the first hit of a window."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "playground:ratelimit",
        client: Optional[aioredis.Redis] = None,
    ):
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._client = client

    def _ensure_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url, decode_responses=True, max_connections=20
            )
            parsed = urlparse(self._redis_url)
            logger.info(
                "Rate limiter using Redis at %s://%s:%s",
                parsed.scheme, parsed.hostname, parsed.port,
            )
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    async def increment(self, key: str, window_seconds: float, now: float) -> RateLimitRecord:
        client = self._ensure_client()
        redis_key = self._key(key)
        window_ms = int(window_seconds * 1000)
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.pttl(redis_key)
            count, ttl_ms = await pipe.execute()
        # A key without a TTL would never reset
        if count == 1 or ttl_ms < 0:
            await client.pexpire(redis_key, window_ms)
            ttl_ms = window_ms
        return RateLimitRecord(key, int(count), now + ttl_ms / 1000)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_rate_limit_store(settings: "PlaygroundSettings") -> RateLimitStore:
    if settings.rate_limit_backend == "redis":
        return RedisRateLimitStore(settings.redis_url)
    return MemoryRateLimitStore()


# ── Limiter ──────────────────────────────────────────────────────────────────

class AdmissionLimiter:
    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = 60,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.store = store if store is not None else MemoryRateLimitStore()
        self.clock = clock
        self._purge_task: Optional[asyncio.Task] = None

    async def hit(self, client_key: str) -> RateLimitDecision:
        now = self.clock()
        record = await self.store.increment(client_key, self.window_seconds, now)
        retry_after = max(1, math.ceil(record.window_reset_at - now))
        if record.window_count > self.limit:
            return RateLimitDecision(False, self.limit, 0, retry_after)
        return RateLimitDecision(True, self.limit, self.limit - record.window_count, retry_after)

    async def check(self, client_key: str) -> RateLimitDecision:
        """Like :meth:`hit`, but raises :class:`RateLimitExceededError` on rejection."""
        decision = await self.hit(client_key)
        if not decision.allowed:
            global_metrics.increment_counter("playground.ratelimit.rejected")
            logger.warning(
                "Rate limit exceeded  client=%s  retry_after=%ds", client_key, decision.retry_after
            )
            raise RateLimitExceededError(client_key, decision.retry_after, self.limit)
        return decision

    async def purge_expired(self) -> int:
        return await self.store.purge_expired(self.clock())

    # ── Background purge ─────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._purge_task is None:
            self._purge_task = asyncio.create_task(self._purge_loop(), name="ratelimit-purge")

    async def stop(self) -> None:
        if self._purge_task is not None:
            self._purge_task.cancel()
            try:
                await self._purge_task
            except asyncio.CancelledError:
                pass
            self._purge_task = None
        await self.store.close()

    async def _purge_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.window_seconds)
                purged = await self.purge_expired()
                if purged:
                    logger.debug("Purged %d stale rate-limit windows", purged)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Rate-limit purge error: %s", exc, exc_info=True)
