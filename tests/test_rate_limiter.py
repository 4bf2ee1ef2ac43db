"""
Per-tenant sliding window rate limiter tests.

Redis is replaced by a small in-memory sorted-set stand-in.
"""
from types import SimpleNamespace

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from flowcredits.config import settings
from flowcredits.services import rate_limiter as rate_limiter_module
from flowcredits.services.rate_limiter import RateLimiter


class InMemorySortedSets:
    def __init__(self):
        self.sets = {}

    def pipeline(self):
        return Pipeline(self)

    async def zremrangebyscore(self, key, low, high):
        members = self.sets.setdefault(key, {})
        for member, score in list(members.items()):
            if low <= score <= high:
                del members[member]

    async def zcard(self, key):
        return len(self.sets.get(key, {}))

    async def zrange(self, key, start, end, withscores=False):
        ordered = sorted(self.sets.get(key, {}).items(), key=lambda item: item[1])
        return ordered[start:end + 1]

    async def zadd(self, key, mapping):
        self.sets.setdefault(key, {}).update(mapping)

    async def expire(self, key, seconds):
        pass


class Pipeline:
    def __init__(self, redis):
        self.redis = redis
        self.calls = []

    def zremrangebyscore(self, *args):
        self.calls.append(self.redis.zremrangebyscore(*args))

    def zcard(self, *args):
        self.calls.append(self.redis.zcard(*args))

    async def execute(self):
        return [await call for call in self.calls]


class UnavailableRedis:
    def pipeline(self):
        raise RedisConnectionError("connection refused")


@pytest.fixture
def limiter():
    limiter = RateLimiter(limit=3, window=60)
    limiter._redis = InMemorySortedSets()
    return limiter


@pytest.mark.asyncio
async def test_limit_per_tenant(limiter, monkeypatch):
    clock = iter(range(1000, 2000))
    monkeypatch.setattr(rate_limiter_module, "time", SimpleNamespace(time=lambda: float(next(clock))))

    results = [await limiter.is_allowed("t-1") for _ in range(4)]

    assert [allowed for allowed, _ in results] == [True, True, True, False]
    assert 1 <= results[-1][1] <= 60
    # Other tenants have their own window
    assert (await limiter.is_allowed("t-2"))[0]
    assert await limiter.get_current_count("t-1") == 3


@pytest.mark.asyncio
async def test_fails_open_when_redis_is_down():
    limiter = RateLimiter(limit=1, window=60)
    limiter._redis = UnavailableRedis()

    assert await limiter.is_allowed("t-1") == (True, 0)


@pytest.mark.asyncio
async def test_rate_limited_request_gets_429(client, tenant, auth_headers, monkeypatch):
    async def exhausted(tenant_id):
        return False, 42

    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(rate_limiter_module.rate_limiter, "is_allowed", exhausted)

    response = await client.get("/api/credits/balance", headers=auth_headers(tenant.id))

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "42"
