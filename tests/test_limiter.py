"""Tests for the admission limiter and its stores."""

from types import SimpleNamespace

import pytest

from playground_gateway.exceptions import RateLimitExceededError
from playground_gateway.limiter import (
    AdmissionLimiter,
    MemoryRateLimitStore,
    RedisRateLimitStore,
    build_rate_limit_store,
    client_key_from,
)
from playground_gateway.config import PlaygroundSettings


class Clock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def incr(self, key):
        self.ops.append(("incr", key))

    def pttl(self, key):
        self.ops.append(("pttl", key))

    async def execute(self):
        results = []
        for op, key in self.ops:
            if op == "incr":
                self.redis.values[key] = self.redis.values.get(key, 0) + 1
                results.append(self.redis.values[key])
            else:
                results.append(self.redis.ttls.get(key, -1))
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for INCR / PTTL / PEXPIRE."""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.closed = False

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def pexpire(self, key, ms):
        self.ttls[key] = ms

    async def aclose(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Fixed window
# ---------------------------------------------------------------------------


class TestAdmissionLimiter:
    @pytest.mark.asyncio
    async def test_limit_plus_one_is_rejected(self):
        clock = Clock()
        limiter = AdmissionLimiter(limit=10, window_seconds=60, clock=clock)

        decisions = [await limiter.hit("1.2.3.4") for _ in range(11)]

        assert all(d.allowed for d in decisions[:10])
        assert [d.remaining for d in decisions[:3]] == [9, 8, 7]
        assert decisions[10].allowed is False
        assert decisions[10].retry_after == 60

    @pytest.mark.asyncio
    async def test_retry_after_counts_down(self):
        clock = Clock()
        limiter = AdmissionLimiter(limit=1, window_seconds=60, clock=clock)
        await limiter.hit("k")
        clock.now += 45.5

        decision = await limiter.hit("k")

        assert decision.allowed is False
        assert decision.retry_after == 15

    @pytest.mark.asyncio
    async def test_window_rollover_admits_again(self):
        clock = Clock()
        limiter = AdmissionLimiter(limit=2, window_seconds=60, clock=clock)
        for _ in range(3):
            await limiter.hit("k")

        clock.now += 60
        decision = await limiter.hit("k")

        assert decision.allowed is True
        assert decision.remaining == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        limiter = AdmissionLimiter(limit=1, window_seconds=60, clock=Clock())
        assert (await limiter.hit("a")).allowed
        assert not (await limiter.hit("a")).allowed
        assert (await limiter.hit("b")).allowed

    @pytest.mark.asyncio
    async def test_check_raises_with_retry_after(self):
        limiter = AdmissionLimiter(limit=1, window_seconds=30, clock=Clock())
        await limiter.check("k")

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check("k")

        assert exc_info.value.retry_after == 30
        assert exc_info.value.status_code == 429
        assert exc_info.value.details == {"retry_after": 30, "limit": 1}

    @pytest.mark.asyncio
    async def test_purge_drops_stale_windows(self):
        clock = Clock()
        store = MemoryRateLimitStore()
        limiter = AdmissionLimiter(limit=5, window_seconds=60, store=store, clock=clock)
        await limiter.hit("old")
        clock.now += 30
        await limiter.hit("new")
        clock.now += 31

        assert await limiter.purge_expired() == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_empty_store_is_kept(self):
        store = MemoryRateLimitStore()
        first = AdmissionLimiter(limit=1, window_seconds=60, store=store, clock=Clock())
        second = AdmissionLimiter(limit=1, window_seconds=60, store=store, clock=Clock())

        assert first.store is store
        await first.hit("k")

        assert not (await second.hit("k")).allowed


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------


class TestRedisStore:
    @pytest.mark.asyncio
    async def test_first_hit_sets_expiry(self):
        redis = FakeRedis()
        store = RedisRateLimitStore(client=redis, key_prefix="rl")

        record = await store.increment("1.2.3.4", 60, now=100.0)

        assert record.window_count == 1
        assert record.window_reset_at == 160.0
        assert redis.ttls["rl:1.2.3.4"] == 60_000

    @pytest.mark.asyncio
    async def test_limiter_over_redis(self):
        redis = FakeRedis()
        limiter = AdmissionLimiter(
            limit=2, window_seconds=60, store=RedisRateLimitStore(client=redis), clock=Clock()
        )

        results = [(await limiter.hit("k")).allowed for _ in range(3)]

        assert results == [True, True, False]
        await limiter.stop()
        assert redis.closed

    def test_backend_selection(self):
        memory = PlaygroundSettings(_env_file=None)
        redis = PlaygroundSettings(_env_file=None, rate_limit_backend="redis")
        assert isinstance(build_rate_limit_store(memory), MemoryRateLimitStore)
        assert isinstance(build_rate_limit_store(redis), RedisRateLimitStore)


# ---------------------------------------------------------------------------
# Client key
# ---------------------------------------------------------------------------


class TestClientKey:
    def _request(self, headers=None, host="10.0.0.5"):
        return SimpleNamespace(
            headers=headers or {},
            client=SimpleNamespace(host=host) if host else None,
        )

    def test_first_forwarded_hop_wins(self):
        request = self._request({"x-forwarded-for": "203.0.113.7, 10.0.0.1"})
        assert client_key_from(request) == "203.0.113.7"

    def test_falls_back_to_peer(self):
        assert client_key_from(self._request()) == "10.0.0.5"

    def test_unknown_when_nothing_available(self):
        assert client_key_from(self._request(host=None)) == "unknown"
