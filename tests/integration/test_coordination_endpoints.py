import pytest
import pytest_asyncio
from fastapi import Depends, Request
from httpx import ASGITransport, AsyncClient
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.coordination import distributed_lock, idempotent, optimistic_lock, optimistic_update
from src.coordination.idempotency import processing_marker
from src.main import create_app
from src.shared.database import get_db_session
from src.tenancy.context import TenantContext
from tests.models import Order


class PayIn(BaseModel):
    order_no: str
    amount: int


class OrderUpdate(BaseModel):
    id: int
    name: str
    version: int


def build_app(calls):
    app = create_app()

    @app.post("/orders/{order_id}/pay")
    @distributed_lock("order:{order_id}")
    @idempotent(key_resolver="{body.order_no}")
    async def pay(order_id: int, body: PayIn):
        calls.append(("pay", order_id, TenantContext.get_tenant_id()))
        return {"order_id": order_id, "order_no": body.order_no, "charge": len(calls)}

    @app.get("/echo/{name}")
    @idempotent()
    def echo(name: str, request: Request):
        calls.append(("echo", name))
        return {"name": name, "path": request.url.path, "seq": len(calls)}

    @app.put("/orders")
    @optimistic_lock(Order)
    async def update_order(body: OrderUpdate, session: AsyncSession = Depends(get_db_session)):
        row = await optimistic_update(session, Order, {"id": body.id}, body.version - 1, {"name": body.name})
        return {"id": row.id, "name": row.name, "version": row.version}

    return app


@pytest.fixture
def calls():
    return []


@pytest_asyncio.fixture
async def client(store, calls):
    transport = ASGITransport(app=build_app(calls))
    async with AsyncClient(transport=transport, base_url="http://test", headers={"X-Tenant-Id": "100001"}) as ac:
        yield ac


@pytest.mark.asyncio
async def test_repeated_payment_is_replayed(client, calls, fake_redis):
    payload = {"order_no": "A-1", "amount": 10}
    first = await client.post("/orders/5/pay", json=payload)
    second = await client.post("/orders/5/pay", json=payload)

    assert first.status_code == second.status_code == 200
    assert first.json() == second.json() == {"order_id": 5, "order_no": "A-1", "charge": 1}
    assert calls == [("pay", 5, "100001")]
    assert "lock:order:5" not in fake_redis.data
    assert "idempotent:anonymous:POST:/orders/5/pay:A-1" in fake_redis.data


@pytest.mark.asyncio
async def test_distinct_keys_run_separately(client, calls):
    await client.post("/orders/5/pay", json={"order_no": "A-1", "amount": 10})
    await client.post("/orders/5/pay", json={"order_no": "A-2", "amount": 10})
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_busy_lock_is_rejected(client, calls, fake_redis):
    fake_redis.data["lock:order:9"] = "other-owner"
    response = await client.post(
        "/orders/9/pay",
        json={"order_no": "B-1", "amount": 1},
        headers={"X-Request-ID": "req-9"},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "lock_conflict"
    assert response.json()["correlation_id"] == "req-9"
    assert calls == []
    assert fake_redis.data["lock:order:9"] == "other-owner"


@pytest.mark.asyncio
async def test_in_flight_duplicate_is_rejected(client, calls, fake_redis):
    key = "idempotent:u-7:POST:/orders/3/pay:C-1"
    fake_redis.data[key] = processing_marker("someone-else")
    response = await client.post(
        "/orders/3/pay",
        json={"order_no": "C-1", "amount": 1},
        headers={"X-User-Id": "u-7"},
    )
    assert response.status_code == 429
    assert response.json()["code"] == "duplicate_request"
    assert calls == []
    assert "lock:order:3" not in fake_redis.data


@pytest.mark.asyncio
async def test_store_outage_is_service_unavailable(client, calls, fake_redis):
    fake_redis.fail = True
    response = await client.post("/orders/1/pay", json={"order_no": "D-1", "amount": 1})
    assert response.status_code == 503
    assert response.json()["code"] == "coordination_unavailable"
    assert calls == []


@pytest.mark.asyncio
async def test_sync_endpoint_with_request_parameter(client, calls):
    first = await client.get("/echo/ann", params={"x": "1"})
    second = await client.get("/echo/ann", params={"x": "1"})
    third = await client.get("/echo/ann", params={"x": "2"})
    assert first.json() == second.json() == {"name": "ann", "path": "/echo/ann", "seq": 1}
    assert third.json()["seq"] == 2


@pytest.mark.asyncio
async def test_optimistic_lock_endpoint(client, session_factory):
    async with session_factory() as session:
        session.add(Order(id=7, name="draft", version=3, tenant_id="100001"))
        await session.commit()

    ok = await client.put("/orders", json={"id": 7, "name": "paid", "version": 3})
    assert ok.status_code == 200
    assert ok.json() == {"id": 7, "name": "paid", "version": 4}

    stale = await client.put("/orders", json={"id": 7, "name": "again", "version": 3})
    assert stale.status_code == 409
    assert stale.json()["code"] == "version_conflict"
    assert stale.json()["details"]["current_version"] == 4

    foreign = await client.put(
        "/orders", json={"id": 7, "name": "x", "version": 4}, headers={"X-Tenant-Id": "100002"}
    )
    assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_health(client, fake_redis):
    assert (await client.get("/_health")).json() == {"status": "ok", "redis": True}
    fake_redis.fail = True
    assert (await client.get("/_health")).json() == {"status": "degraded", "redis": False}


def test_openapi_hides_injected_request_parameter(calls):
    schema = build_app(calls).openapi()
    params = schema["paths"]["/orders/{order_id}/pay"]["post"].get("parameters", [])
    assert [p["name"] for p in params] == ["order_id"]
