from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis wrapper holding short-lived login lockout counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic check-and-increment: concurrent failures cannot each slip past
    # the threshold before any of them is counted.
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

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _keys(subject: str) -> tuple[str, str]:
        return f"auth:login:lockout:{subject}", f"auth:login:attempts:{subject}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_login_lockout(self, subject: str) -> bool:
        lockout_key, _ = self._keys(subject)
        return bool(await self.client.exists(lockout_key))

    async def record_login_failure(
        self, subject: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        """Count a failed login and start the lockout window at the threshold.

        Returns ``(locked_out, attempts)``; attempts is ``-1`` when the
        subject was already locked out.
        """
        lockout_key, attempts_key = self._keys(subject)
        result = await self.client.eval(
            self._LOGIN_FAILURE_SCRIPT,
            2,
            lockout_key,
            attempts_key,
            max_attempts,
            lockout_seconds,
        )
        return bool(result[0]), int(result[1])

    async def clear_login_attempts(self, subject: str) -> None:
        _, attempts_key = self._keys(subject)
        await self.client.delete(attempts_key)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable surface as :class:`RedisCache` but talks to
    Redis through a blocking client, so pytest's per-test event loops never
    hold on to a connection bound to a previous loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_login_lockout(self, subject: str) -> bool:
        lockout_key, _ = RedisCache._keys(subject)
        return bool(self._sync_client.exists(lockout_key))

    async def record_login_failure(
        self, subject: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        lockout_key, attempts_key = RedisCache._keys(subject)
        result = self._sync_client.eval(
            RedisCache._LOGIN_FAILURE_SCRIPT,
            2,
            lockout_key,
            attempts_key,
            max_attempts,
            lockout_seconds,
        )
        return bool(result[0]), int(result[1])

    async def clear_login_attempts(self, subject: str) -> None:
        _, attempts_key = RedisCache._keys(subject)
        self._sync_client.delete(attempts_key)

    async def close(self) -> None:
        self._sync_client.close()
