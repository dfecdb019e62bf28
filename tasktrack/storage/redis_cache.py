from __future__ import annotations

from typing import Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic failure count with lockout trigger. Checking and incrementing in one
# script keeps concurrent failures from each slipping under the threshold.
_LOGIN_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""


def _lockout_key(user_id: str) -> str:
    return f"auth:login_lockout:{user_id}"


def _attempts_key(user_id: str) -> str:
    return f"auth:login_attempts:{user_id}"


class RedisCache:
    """Thin Redis wrapper holding login lockout state shared across instances."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_login_lockout(self, user_id: str) -> bool:
        return bool(await self.client.exists(_lockout_key(user_id)))

    async def atomic_login_failure(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 900
    ) -> tuple[bool, int]:
        """Record a failed login and trigger the lockout when the threshold is hit.

        Returns:
            Tuple of (is_now_locked_out, current_attempts); attempts is -1 when
            the user was already locked before this call.
        """
        result = await self.client.eval(
            _LOGIN_FAILURE_SCRIPT,
            2,
            _lockout_key(user_id),
            _attempts_key(user_id),
            max_attempts,
            lockout_seconds,
        )
        return bool(result[0]), int(result[1])

    async def clear_login_failures(self, user_id: str) -> None:
        await self.client.delete(_attempts_key(user_id), _lockout_key(user_id))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, while exposing the same awaitable methods as RedisCache.
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

    async def check_login_lockout(self, user_id: str) -> bool:
        return bool(self.client.exists(_lockout_key(user_id)))

    async def atomic_login_failure(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 900
    ) -> tuple[bool, int]:
        result = self.client.eval(
            _LOGIN_FAILURE_SCRIPT,
            2,
            _lockout_key(user_id),
            _attempts_key(user_id),
            max_attempts,
            lockout_seconds,
        )
        return bool(result[0]), int(result[1])

    async def clear_login_failures(self, user_id: str) -> None:
        self.client.delete(_attempts_key(user_id), _lockout_key(user_id))

    async def close(self) -> None:
        self.client.close()


Cache = Union[RedisCache, SyncRedisCache]
