from __future__ import annotations

import asyncio
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.coordination.interceptors import CallNext, Interceptor, Invocation, intercept
from src.coordination.request import resolve_key_template
from src.shared.config import get_settings
from src.shared.exceptions import LockAcquireError
from src.shared.logging import get_logger
from src.shared.redis import RedisClient, get_redis

logger = get_logger(__name__)

DEFAULT_LOCK_MESSAGE = "Operation in progress, please retry later"


def _lease_default() -> int:
    return get_settings().LOCK_LEASE_SECONDS


def _prefix_default() -> str:
    return get_settings().LOCK_KEY_PREFIX


class LockOptions(BaseModel):
    key: str
    wait_time: float = 0          # seconds; <= 0 fails immediately when busy
    lease_time: int = Field(default_factory=_lease_default, gt=0)
    message: str = DEFAULT_LOCK_MESSAGE
    key_prefix: str = Field(default_factory=_prefix_default)


@dataclass(frozen=True)
class LockHandle:
    key: str
    token: str
    lease_seconds: int


def new_lock_token() -> str:
    """Owner token: process id plus a random uuid."""
    return f"{os.getpid()}:{uuid4()}"


class DistributedLock:
    """
    Lease lock in the coordination store.

    acquire: SET key token EX lease NX, polled until ``wait_seconds`` elapse.
    release: delete only while the key still holds our token.
    """

    def __init__(self, redis: Optional[RedisClient] = None, poll_interval: Optional[float] = None) -> None:
        self._redis = redis
        self._poll_interval = (
            poll_interval if poll_interval is not None else get_settings().LOCK_POLL_INTERVAL_MS / 1000
        )

    async def _client(self) -> RedisClient:
        return self._redis or await get_redis()

    async def acquire(self, key: str, wait_seconds: float = 0, lease_seconds: Optional[int] = None) -> Optional[LockHandle]:
        """Return a handle, or None when the lock stayed busy. Store failures raise."""
        lease = lease_seconds or get_settings().LOCK_LEASE_SECONDS
        client = await self._client()
        token = new_lock_token()
        deadline = time.monotonic() + max(wait_seconds, 0)

        while True:
            if await client.set(key, token, ex=lease, nx=True):
                logger.debug("Lock acquired", lock_key=key, lease_seconds=lease)
                return LockHandle(key=key, token=token, lease_seconds=lease)
            if wait_seconds <= 0:
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._poll_interval, remaining))

    async def release(self, handle: LockHandle) -> bool:
        """Never raises; the protected work has already finished."""
        try:
            client = await self._client()
            released = await client.compare_and_delete(handle.key, handle.token)
        except Exception as e:
            logger.warning("Lock release failed", lock_key=handle.key, error=str(e))
            return False
        if not released:
            logger.warning("Lock was no longer held at release", lock_key=handle.key)
        return released

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        wait_seconds: float = 0,
        lease_seconds: Optional[int] = None,
        message: str = DEFAULT_LOCK_MESSAGE,
    ) -> AsyncIterator[LockHandle]:
        handle = await self.acquire(key, wait_seconds, lease_seconds)
        if handle is None:
            logger.info("Lock busy", lock_key=key)
            raise LockAcquireError(message, details={"key": key})
        try:
            yield handle
        finally:
            await self.release(handle)


class LockInterceptor(Interceptor):
    def __init__(self, options: LockOptions, lock: Optional[DistributedLock] = None) -> None:
        self.options = options
        self.lock = lock or DistributedLock()

    def lock_key(self, invocation: Invocation) -> str:
        return f"{self.options.key_prefix}{resolve_key_template(self.options.key, invocation.snapshot)}"

    async def intercept(self, invocation: Invocation, call_next: CallNext) -> Any:
        opts = self.options
        async with self.lock.hold(self.lock_key(invocation), opts.wait_time, opts.lease_time, opts.message):
            return await call_next(invocation)


def distributed_lock(
    key: str,
    *,
    wait_time: float = 0,
    lease_time: Optional[int] = None,
    message: str = DEFAULT_LOCK_MESSAGE,
    key_prefix: Optional[str] = None,
    lock: Optional[DistributedLock] = None,
):
    """Endpoint decorator: hold ``key`` (a template) for the duration of the call."""
    opts: dict = {"key": key, "wait_time": wait_time, "message": message}
    if lease_time is not None:
        opts["lease_time"] = lease_time
    if key_prefix is not None:
        opts["key_prefix"] = key_prefix
    return intercept(LockInterceptor(LockOptions(**opts), lock))
