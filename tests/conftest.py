import hashlib
import time

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoScriptError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from src.shared import redis as redis_module
from src.shared.database import Base, set_session_factory
from src.shared.redis import RedisClient, set_redis_client
from src.tenancy.filters import install_tenant_filter
from src.tenancy.models import TenantModel  # noqa: F401  (registers sys_tenant)
from tests.models import Order  # noqa: F401


class FakeRedis:
    """In-memory stand-in for the redis.asyncio client surface RedisClient uses."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.scripts = {}
        self.fail = False
        self.set_calls = 0

    def _check(self):
        if self.fail:
            raise RedisConnectionError("fake redis is down")

    def _purge(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    def expire_now(self, key):
        self.expiry[key] = time.monotonic() - 1

    async def ping(self):
        self._check()
        return True

    async def script_load(self, script):
        self._check()
        sha = hashlib.sha1(script.encode()).hexdigest()
        self.scripts[sha] = script
        return sha

    async def get(self, key):
        self._check()
        self._purge(key)
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        self.set_calls += 1
        self._purge(key)
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex:
            self.expiry[key] = time.monotonic() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            self._purge(key)
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def evalsha(self, sha, numkeys, *args):
        self._check()
        if sha not in self.scripts:
            raise NoScriptError("NOSCRIPT")
        return await self.eval(self.scripts[sha], numkeys, *args)

    async def eval(self, script, numkeys, *args):
        self._check()
        key, expected = args[0], args[1]
        self._purge(key)
        if self.data.get(key) != expected:
            return 0
        if script == RedisClient._UNLOCK_LUA:
            return await self.delete(key)
        if script == RedisClient._REPLACE_LUA:
            self.data[key] = args[2]
            self.expiry[key] = time.monotonic() + int(args[3])
            return 1
        raise AssertionError("unexpected script")

    async def aclose(self):
        return None


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    client = RedisClient(url="redis://fake", namespace="", client=fake_redis)
    previous = redis_module.redis_client
    set_redis_client(client)
    yield client
    set_redis_client(previous)


class TenantSession(Session):
    pass


install_tenant_filter(TenantSession)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, sync_session_class=TenantSession)
    set_session_factory(factory)
    yield factory
    set_session_factory(None)
    await engine.dispose()
