from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for server-side sessions, OAuth state and the replay denylist."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic read-once of a single session field
    _PULL_SCRIPT = """
local value = redis.call('HGET', KEYS[1], ARGV[1])
if value then
  redis.call('HDEL', KEYS[1], ARGV[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"gatehouse:session:{session_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # replay denylist
    async def add_if_absent(self, key: str, ttl_seconds: int) -> bool:
        """SET NX EX: True only for the first writer inside the TTL."""
        result = await self.client.set(
            f"gatehouse:denylist:{key}", "1", nx=True, ex=max(1, int(ttl_seconds))
        )
        return bool(result)

    # sessions
    async def session_create(self, session_id: str, ttl_seconds: int) -> None:
        key = self._session_key(session_id)
        pipe = self.client.pipeline()
        pipe.hset(key, "_created", "1")
        pipe.expire(key, max(1, int(ttl_seconds)))
        await pipe.execute()

    async def session_exists(self, session_id: str) -> bool:
        return bool(await self.client.exists(self._session_key(session_id)))

    async def session_put(
        self, session_id: str, name: str, value: Any, ttl_seconds: int
    ) -> None:
        key = self._session_key(session_id)
        pipe = self.client.pipeline()
        pipe.hset(key, name, json.dumps(value))
        pipe.expire(key, max(1, int(ttl_seconds)))
        await pipe.execute()

    async def session_get(self, session_id: str, name: str) -> Any:
        raw = await self.client.hget(self._session_key(session_id), name)
        return json.loads(raw) if raw is not None else None

    async def session_pull(self, session_id: str, name: str) -> Any:
        raw = await self.client.eval(
            self._PULL_SCRIPT, 1, self._session_key(session_id), name
        )
        return json.loads(raw) if raw is not None else None

    async def session_forget(self, session_id: str, name: str) -> None:
        await self.client.hdel(self._session_key(session_id), name)

    async def session_flush(self, session_id: str) -> None:
        await self.client.delete(self._session_key(session_id))

    async def session_all(self, session_id: str) -> Dict[str, Any]:
        raw = await self.client.hgetall(self._session_key(session_id))
        return {k: json.loads(v) for k, v in raw.items() if not k.startswith("_")}

    # oauth state
    async def set_oauth_state(self, state: str, provider: str, ttl_seconds: int) -> None:
        await self.client.set(
            f"gatehouse:oauth:{state}",
            json.dumps({"provider": provider}),
            ex=max(1, int(ttl_seconds)),
        )

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        """Atomically consume an OAuth state and return its provider."""
        cached = await self.client.getdel(f"gatehouse:oauth:{state}")
        if cached is None:
            return None
        try:
            return json.loads(cached).get("provider")
        except (json.JSONDecodeError, TypeError, AttributeError):
            return None

    async def close(self) -> None:
        """Close Redis connection pool."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest but exposes the same awaitable methods as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def add_if_absent(self, key: str, ttl_seconds: int) -> bool:
        return bool(
            self.client.set(
                f"gatehouse:denylist:{key}", "1", nx=True, ex=max(1, int(ttl_seconds))
            )
        )

    async def session_create(self, session_id: str, ttl_seconds: int) -> None:
        key = RedisCache._session_key(session_id)
        pipe = self.client.pipeline()
        pipe.hset(key, "_created", "1")
        pipe.expire(key, max(1, int(ttl_seconds)))
        pipe.execute()

    async def session_exists(self, session_id: str) -> bool:
        return bool(self.client.exists(RedisCache._session_key(session_id)))

    async def session_put(
        self, session_id: str, name: str, value: Any, ttl_seconds: int
    ) -> None:
        key = RedisCache._session_key(session_id)
        pipe = self.client.pipeline()
        pipe.hset(key, name, json.dumps(value))
        pipe.expire(key, max(1, int(ttl_seconds)))
        pipe.execute()

    async def session_get(self, session_id: str, name: str) -> Any:
        raw = self.client.hget(RedisCache._session_key(session_id), name)
        return json.loads(raw) if raw is not None else None

    async def session_pull(self, session_id: str, name: str) -> Any:
        raw = self.client.eval(
            RedisCache._PULL_SCRIPT, 1, RedisCache._session_key(session_id), name
        )
        return json.loads(raw) if raw is not None else None

    async def session_forget(self, session_id: str, name: str) -> None:
        self.client.hdel(RedisCache._session_key(session_id), name)

    async def session_flush(self, session_id: str) -> None:
        self.client.delete(RedisCache._session_key(session_id))

    async def session_all(self, session_id: str) -> Dict[str, Any]:
        raw = self.client.hgetall(RedisCache._session_key(session_id))
        return {k: json.loads(v) for k, v in raw.items() if not k.startswith("_")}

    async def set_oauth_state(self, state: str, provider: str, ttl_seconds: int) -> None:
        self.client.set(
            f"gatehouse:oauth:{state}",
            json.dumps({"provider": provider}),
            ex=max(1, int(ttl_seconds)),
        )

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        cached = self.client.getdel(f"gatehouse:oauth:{state}")
        if cached is None:
            return None
        try:
            return json.loads(cached).get("provider")
        except (json.JSONDecodeError, TypeError, AttributeError):
            return None

    async def close(self) -> None:
        self.client.close()
