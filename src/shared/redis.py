# src/shared/redis.py
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import NoScriptError, RedisError

from src.shared.config import get_settings
from src.shared.exceptions import CoordinationStoreError
from src.shared.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RedisClient:
    """
    Async Redis client used as the coordination store.

    Offers exactly what locks and idempotency need:
      - SET key value [EX ttl] [NX]
      - GET / DEL
      - atomic compare-and-delete and compare-and-set (server-side Lua)

    Every Redis failure surfaces as CoordinationStoreError so callers on the
    critical path never mistake an outage for "lock free" or "key absent".
    """

    def __init__(
        self,
        url: Optional[str] = None,
        namespace: Optional[str] = None,
        client: Optional[Redis] = None,
    ) -> None:
        settings = get_settings()
        self._url = url or settings.REDIS_URL
        ns = settings.REDIS_NAMESPACE if namespace is None else namespace
        self._ns = ns.strip(":")
        self.redis: Optional[Redis] = client
        self._lock = asyncio.Lock()

        self._unlock_sha: Optional[str] = None
        self._replace_sha: Optional[str] = None

    # ---------- connection management ----------

    async def connect(self) -> None:
        """Create client and verify connection."""
        async with self._lock:
            if self.redis is None:
                # NOTE: from_url is sync; do NOT await it
                self.redis = redis.from_url(
                    self._url,
                    encoding="utf-8",
                    decode_responses=True,            # return str instead of bytes
                    health_check_interval=30,         # ping occasionally
                    socket_connect_timeout=5.0,
                    socket_timeout=5.0,
                    retry_on_timeout=True,
                    max_connections=100,
                )
            try:
                await self.redis.ping()
                self._unlock_sha = await self.redis.script_load(self._UNLOCK_LUA)
                self._replace_sha = await self.redis.script_load(self._REPLACE_LUA)
            except RedisError as e:
                raise CoordinationStoreError(f"Redis connection failed: {e}") from e
        logger.info("Coordination store connected", namespace=self._ns or None)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            logger.info("Coordination store closed")

    async def ping(self) -> bool:
        return bool(await self._guard(lambda r: r.ping()))

    # ---------- low-level helpers ----------

    def key(self, *parts: Any) -> str:
        # Build a namespaced key: "<ns>:<p1>:<p2>:..."
        norm = [str(p) for p in parts if p is not None and str(p) != ""]
        return ":".join([self._ns, *norm]) if self._ns else ":".join(norm)

    async def _guard(self, fn: Callable[[Redis], Awaitable[T]]) -> T:
        if self.redis is None:
            await self.connect()
        try:
            return await fn(self.redis)  # type: ignore[arg-type]
        except RedisError as e:
            raise CoordinationStoreError(f"Redis error: {e}") from e

    async def _run_script(self, sha: Optional[str], script: str, *keys_and_args: Any) -> Any:
        async def _run(r: Redis) -> Any:
            # Use EVALSHA when available, fallback to EVAL
            if sha:
                try:
                    return await r.evalsha(sha, 1, *keys_and_args)
                except NoScriptError:
                    pass
            return await r.eval(script, 1, *keys_and_args)
        return await self._guard(_run)

    # ---------- strings ----------

    async def get(self, key: str) -> Optional[str]:
        return await self._guard(lambda r: r.get(key))

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False) -> bool:
        """SET with optional EX/NX. Returns False when NX prevented the write."""
        result = await self._guard(lambda r: r.set(key, value, ex=ex, nx=nx))
        return bool(result)

    async def delete(self, key: str) -> bool:
        return await self._guard(lambda r: r.delete(key)) > 0

    # ---------- atomic compare-and-* ----------

    _UNLOCK_LUA = """
    -- KEYS[1] = key
    -- ARGV[1] = expected value (owner token)
    if redis.call('GET', KEYS[1]) == ARGV[1] then
      return redis.call('DEL', KEYS[1])
    else
      return 0
    end
    """

    _REPLACE_LUA = """
    -- KEYS[1] = key
    -- ARGV[1] = expected value
    -- ARGV[2] = new value
    -- ARGV[3] = ttl seconds
    if redis.call('GET', KEYS[1]) == ARGV[1] then
      redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
      return 1
    else
      return 0
    end
    """

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete ``key`` only if it still holds ``expected`` (atomic check & delete)."""
        return int(await self._run_script(self._unlock_sha, self._UNLOCK_LUA, key, expected)) == 1

    async def compare_and_set(self, key: str, expected: str, value: str, ex: int) -> bool:
        """Overwrite ``key`` with ``value`` only if it still holds ``expected``."""
        return int(await self._run_script(self._replace_sha, self._REPLACE_LUA, key, expected, value, ex)) == 1


# Global instance
redis_client = RedisClient()


async def get_redis() -> RedisClient:
    if redis_client.redis is None:
        await redis_client.connect()
    return redis_client


def set_redis_client(client: RedisClient) -> None:
    """Swap the process-wide client (app startup, tests)."""
    global redis_client
    redis_client = client
