import pytest
from pydantic import BaseModel
from sqlalchemy import select

from src.coordination.interceptors import Invocation
from src.coordination.optimistic_lock import (
    OptimisticLockInterceptor,
    OptimisticLockOptions,
    optimistic_update,
    value_at_path,
)
from src.coordination.request import RequestSnapshot
from src.shared.exceptions import NotFoundError, OptimisticLockError
from src.tenancy.context import TenantContext
from tests.models import Order


class OrderUpdate(BaseModel):
    id: int
    name: str
    version: int


async def seed(factory, version=3, tenant_id="100001"):
    async with factory() as session:
        session.add(Order(id=7, name="draft", version=version, tenant_id=tenant_id))
        await session.commit()


async def stored(factory):
    async with factory() as session:
        return (await session.execute(select(Order).where(Order.id == 7))).scalar_one()


@pytest.mark.asyncio
async def test_conditional_update_increments_version_once(session_factory):
    await seed(session_factory)

    async with session_factory() as session:
        row = await optimistic_update(session, Order, {"id": 7}, 3, {"name": "paid"})
        await session.commit()
    assert (row.version, row.name) == (4, "paid")

    async with session_factory() as session:
        with pytest.raises(OptimisticLockError) as exc:
            await optimistic_update(session, Order, {"id": 7}, 3, {"name": "again"})
        await session.rollback()
    assert exc.value.status_code == 409

    row = await stored(session_factory)
    assert (row.version, row.name) == (4, "paid")


@pytest.mark.asyncio
async def test_conditional_update_respects_tenant(session_factory):
    await seed(session_factory, tenant_id="100002")
    async with session_factory() as session:
        with TenantContext.with_tenant("100001"):
            with pytest.raises(OptimisticLockError):
                await optimistic_update(session, Order, {"id": 7}, 3, {"name": "x"})


def interceptor(factory, **overrides):
    return OptimisticLockInterceptor(OptimisticLockOptions(model=Order, **overrides), factory)


async def passthrough(invocation):
    return invocation


@pytest.mark.asyncio
async def test_interceptor_injects_next_version(session_factory):
    await seed(session_factory)
    payload = OrderUpdate(id=7, name="paid", version=3)
    raw = {"id": 7, "version": 3}
    invocation = Invocation(
        snapshot=RequestSnapshot(body={"id": 7, "name": "paid", "version": 3}),
        kwargs={"body": payload, "raw": raw},
    )
    result = await interceptor(session_factory).intercept(invocation, passthrough)
    assert result.snapshot.body["version"] == 4
    assert payload.version == 4
    assert raw["version"] == 4


@pytest.mark.asyncio
async def test_interceptor_rejects_stale_version(session_factory):
    await seed(session_factory)
    invocation = Invocation(snapshot=RequestSnapshot(body={"id": 7, "version": 2}))
    with pytest.raises(OptimisticLockError):
        await interceptor(session_factory).intercept(invocation, passthrough)


@pytest.mark.asyncio
async def test_interceptor_missing_row_is_not_found(session_factory):
    invocation = Invocation(snapshot=RequestSnapshot(body={"id": 99, "version": 0}))
    with pytest.raises(NotFoundError) as exc:
        await interceptor(session_factory).intercept(invocation, passthrough)
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_interceptor_skips_when_id_or_version_absent(session_factory):
    calls = []

    async def handler(invocation):
        calls.append(invocation)
        return "ran"

    icpt = interceptor(session_factory)
    assert await icpt.intercept(Invocation(snapshot=RequestSnapshot(body={"id": 7})), handler) == "ran"
    assert await icpt.intercept(Invocation(snapshot=RequestSnapshot(body={"version": 1})), handler) == "ran"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_interceptor_reads_id_from_path_params(session_factory):
    await seed(session_factory)
    invocation = Invocation(snapshot=RequestSnapshot(params={"id": "7"}, body={"version": 3}))
    result = await interceptor(session_factory, id_path="params.id").intercept(invocation, passthrough)
    assert result.snapshot.body["version"] == 4


def test_value_at_path():
    snapshot = RequestSnapshot(body={"order": {"id": 5}}, query={"v": "2"})
    assert value_at_path(snapshot, "body.order.id") == 5
    assert value_at_path(snapshot, "query.v") == "2"
    assert value_at_path(snapshot, "body.missing.id") is None
    assert value_at_path(snapshot, "headers.x") is None
