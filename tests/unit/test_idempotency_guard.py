import asyncio
import json

import pytest
from starlette.responses import JSONResponse, Response, StreamingResponse

from src.coordination.idempotency import (
    PROCESSING,
    IdempotencyGuard,
    IdempotentOptions,
    decode_result,
    encode_result,
    is_processing,
)
from src.coordination.request import RequestSnapshot
from src.shared.exceptions import CoordinationStoreError, DuplicateRequestError

KEY = "idempotent:u1:POST:/pay:abc"


def options(**overrides):
    return IdempotentOptions(**{"timeout": 5, "key_prefix": "idempotent:", **overrides})


@pytest.mark.asyncio
async def test_in_flight_duplicate_then_replay(store):
    guard = IdempotencyGuard(store)
    executions = []

    async def pay():
        executions.append(1)
        await asyncio.sleep(0.2)
        return {"paid": True}

    async def second_call():
        await asyncio.sleep(0.05)
        with pytest.raises(DuplicateRequestError) as exc:
            await guard.run(KEY, options(), pay)
        return exc.value.status_code

    async def third_call():
        await asyncio.sleep(0.3)
        return await guard.run(KEY, options(), pay)

    first, second, third = await asyncio.gather(guard.run(KEY, options(), pay), second_call(), third_call())
    assert first == {"paid": True}
    assert second == 429
    assert third == {"paid": True}
    assert len(executions) == 1


@pytest.mark.asyncio
async def test_error_clears_key_so_retry_runs(store):
    guard = IdempotencyGuard(store)

    async def fails():
        raise ValueError("nope")

    with pytest.raises(ValueError):
        await guard.run(KEY, options(), fails)
    assert await store.get(KEY) is None

    async def works():
        return {"ok": 1}

    assert await guard.run(KEY, options(), works) == {"ok": 1}


@pytest.mark.asyncio
async def test_error_keeps_marker_when_delete_on_error_disabled(store):
    guard = IdempotencyGuard(store)

    async def fails():
        raise ValueError("nope")

    with pytest.raises(ValueError):
        await guard.run(KEY, options(delete_on_error=False), fails)
    assert is_processing(await store.get(KEY))
    with pytest.raises(DuplicateRequestError):
        await guard.run(KEY, options(), fails)


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_mask_handler_error(store, fake_redis):
    guard = IdempotencyGuard(store)

    async def fails():
        fake_redis.fail = True
        raise ValueError("handler failed")

    with pytest.raises(ValueError, match="handler failed"):
        await guard.run(KEY, options(), fails)


@pytest.mark.asyncio
async def test_admission_failure_propagates(store, fake_redis):
    fake_redis.fail = True

    async def never():
        raise AssertionError("handler must not run")

    with pytest.raises(CoordinationStoreError):
        await IdempotencyGuard(store).run(KEY, options(), never)


@pytest.mark.asyncio
async def test_stale_owner_cannot_overwrite_newer_marker(store, fake_redis):
    guard = IdempotencyGuard(store)
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return {"from": "stale"}

    stale = asyncio.create_task(guard.run(KEY, options(), slow))
    await asyncio.sleep(0)
    # the stale owner's marker expires and a new call is admitted
    fake_redis.expire_now(KEY)
    newer_started = asyncio.Event()

    async def newer_handler():
        newer_started.set()
        await asyncio.sleep(0.05)
        return {"from": "newer"}

    newer = asyncio.create_task(guard.run(KEY, options(), newer_handler))
    await newer_started.wait()
    release.set()
    assert await stale == {"from": "stale"}
    assert is_processing(await store.get(KEY))
    assert await newer == {"from": "newer"}
    assert decode_result(await store.get(KEY)) == {"from": "newer"}


@pytest.mark.asyncio
async def test_unstorable_result_is_returned_and_key_released(store, fake_redis):
    guard = IdempotencyGuard(store)
    calls = []

    async def download():
        calls.append(1)
        return StreamingResponse(iter([b"x"]))

    result = await guard.run(KEY, options(), download)
    assert isinstance(result, StreamingResponse)
    assert KEY not in fake_redis.data

    await guard.run(KEY, options(), download)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_unencodable_value_releases_key(store, fake_redis):
    guard = IdempotencyGuard(store)
    marker = object()

    async def handler():
        return marker

    assert await guard.run(KEY, options(), handler) is marker
    assert KEY not in fake_redis.data


def test_build_key_uses_template_or_digest():
    snapshot = RequestSnapshot(method="POST", path="/pay", user_id="u1", body={"orderNo": "abc"})
    assert IdempotencyGuard.build_key(snapshot, options(key_resolver="{body.orderNo}")) == KEY

    digest_key = IdempotencyGuard.build_key(snapshot, options())
    assert digest_key.startswith("idempotent:u1:POST:/pay:")
    other = RequestSnapshot(method="POST", path="/pay", user_id="u1", body={"orderNo": "xyz"})
    assert IdempotencyGuard.build_key(other, options()) != digest_key
    # empty resolution falls back to the digest
    assert IdempotencyGuard.build_key(snapshot, options(key_resolver="{body.missing}")) == digest_key


def test_result_envelope():
    assert decode_result(encode_result({"paid": True})) == {"paid": True}
    assert decode_result(encode_result([1, 2])) == [1, 2]

    replayed = decode_result(encode_result(JSONResponse({"a": 1}, status_code=201)))
    assert isinstance(replayed, Response)
    assert replayed.status_code == 201
    assert json.loads(replayed.body) == {"a": 1}

    assert is_processing(PROCESSING)
    assert not is_processing(encode_result({"x": PROCESSING}))
