"""RedisCache behaviour against a small in-process stand-in for redis.asyncio."""

import pytest

from gatehouse.service.second_factor import ReplayDenylist
from gatehouse.service.session import SessionStore
from gatehouse.storage.redis_cache import RedisCache


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def hset(self, *args):
        self.ops.append(("hset", args))

    def expire(self, *args):
        self.ops.append(("expire", args))

    async def execute(self):
        return [await getattr(self.client, name)(*args) for name, args in self.ops]


class FakeAsyncRedis:
    def __init__(self):
        self.strings = {}
        self.hashes = {}
        self.ttls = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        self.ttls[key] = ex
        return True

    async def getdel(self, key):
        return self.strings.pop(key, None)

    async def hset(self, key, name, value):
        self.hashes.setdefault(key, {})[name] = value
        return 1

    async def hget(self, key, name):
        return self.hashes.get(key, {}).get(name)

    async def hdel(self, key, name):
        return 1 if self.hashes.get(key, {}).pop(name, None) is not None else 0

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def exists(self, key):
        return int(key in self.hashes or key in self.strings)

    async def delete(self, key):
        self.hashes.pop(key, None)
        self.strings.pop(key, None)

    async def expire(self, key, seconds):
        self.ttls[key] = seconds

    async def eval(self, script, numkeys, key, name):
        value = await self.hget(key, name)
        if value is not None:
            await self.hdel(key, name)
        return value

    def pipeline(self):
        return FakePipeline(self)

    async def aclose(self):
        pass


@pytest.fixture
def cache():
    cache = RedisCache("redis://localhost:6379/15")
    cache.client = FakeAsyncRedis()
    return cache


class TestDenylist:
    async def test_set_nx_ex(self, cache):
        assert await cache.add_if_absent("u:123456", 240) is True
        assert await cache.add_if_absent("u:123456", 240) is False
        assert cache.client.ttls["gatehouse:denylist:u:123456"] == 240

    async def test_replay_denylist_over_redis(self, cache):
        denylist = ReplayDenylist(cache, ttl_seconds=240)
        assert await denylist.insert_if_absent("u:1") is True
        assert await denylist.insert_if_absent("u:1") is False


class TestSessions:
    async def test_session_hash_round_trip(self, cache):
        await cache.session_create("s1", 600)
        assert await cache.session_exists("s1")
        await cache.session_put("s1", "auth:user_id", "u-1", 600)
        assert await cache.session_get("s1", "auth:user_id") == "u-1"
        assert await cache.session_all("s1") == {"auth:user_id": "u-1"}
        assert cache.client.ttls["gatehouse:session:s1"] == 600

    async def test_pull_is_read_once(self, cache):
        await cache.session_put("s1", "2fa:user:id", "u-1", 600)
        assert await cache.session_pull("s1", "2fa:user:id") == "u-1"
        assert await cache.session_pull("s1", "2fa:user:id") is None

    async def test_flush(self, cache):
        await cache.session_create("s1", 600)
        await cache.session_flush("s1")
        assert not await cache.session_exists("s1")

    async def test_session_store_regenerate(self, cache):
        sessions = SessionStore(cache, ttl_minutes=10)
        sid = await sessions.start()
        await sessions.put(sid, "url:intended", "/reports")
        new_sid = await sessions.regenerate(sid)
        assert new_sid != sid
        assert await sessions.get(new_sid, "url:intended") == "/reports"
        assert not await cache.session_exists(sid)


class TestOAuthState:
    async def test_state_consumed_once(self, cache):
        await cache.set_oauth_state("st", "google", 600)
        assert await cache.pop_oauth_state("st") == "google"
        assert await cache.pop_oauth_state("st") is None
