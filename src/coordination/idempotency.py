"""
Idempotent request handling.

Each admitted call writes a PROCESSING marker (``SET NX EX timeout``) that
carries a per-call owner token. The owner later either replaces the marker
with the serialized result or deletes it on error; both steps are
compare-and-* operations on the owner's marker, so an owner whose marker
has expired and been replaced by a newer call can no longer touch the key.

Outcomes for a second call with the same key while the entry lives:
  - marker present  -> DuplicateRequestError (429)
  - result present  -> stored result replayed, handler not invoked
"""
from __future__ import annotations

import base64
import json
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from starlette.responses import Response

from src.coordination.interceptors import CallNext, Interceptor, Invocation, intercept
from src.coordination.request import RequestSnapshot, resolve_key_template
from src.shared.config import get_settings
from src.shared.exceptions import CoordinationStoreError, DuplicateRequestError
from src.shared.logging import get_logger
from src.shared.redis import RedisClient, get_redis

logger = get_logger(__name__)

PROCESSING = "__PROCESSING__"
DEFAULT_DUPLICATE_MESSAGE = "Duplicate request, please do not resubmit"

_SKIPPED_HEADERS = {"content-length", "content-type"}


def _timeout_default() -> int:
    return get_settings().IDEMPOTENCY_TIMEOUT_SECONDS


def _prefix_default() -> str:
    return get_settings().IDEMPOTENCY_KEY_PREFIX


class IdempotentOptions(BaseModel):
    timeout: int = Field(default_factory=_timeout_default, gt=0)  # seconds
    key_resolver: str = ""
    message: str = DEFAULT_DUPLICATE_MESSAGE
    delete_on_error: bool = True
    key_prefix: str = Field(default_factory=_prefix_default)


def processing_marker(token: str) -> str:
    return f"{PROCESSING}:{token}"


def is_processing(value: str) -> bool:
    return value == PROCESSING or value.startswith(PROCESSING + ":")


def encode_result(result: Any) -> str:
    if isinstance(result, Response):
        return json.dumps(
            {
                "kind": "response",
                "status_code": result.status_code,
                "media_type": result.media_type,
                "headers": {k: v for k, v in result.headers.items() if k.lower() not in _SKIPPED_HEADERS},
                "body": base64.b64encode(bytes(result.body)).decode("ascii"),
            }
        )
    return json.dumps({"kind": "json", "value": jsonable_encoder(result)})


def decode_result(raw: str) -> Any:
    try:
        envelope = json.loads(raw)
    except ValueError:
        return raw
    if not isinstance(envelope, dict):
        return envelope
    kind = envelope.get("kind")
    if kind == "json":
        return envelope.get("value")
    if kind == "response":
        return Response(
            content=base64.b64decode(envelope.get("body") or ""),
            status_code=envelope.get("status_code", 200),
            media_type=envelope.get("media_type"),
            headers=envelope.get("headers") or None,
        )
    return envelope


class IdempotencyGuard:
    def __init__(self, redis: Optional[RedisClient] = None) -> None:
        self._redis = redis

    async def _client(self) -> RedisClient:
        return self._redis or await get_redis()

    @staticmethod
    def build_key(snapshot: RequestSnapshot, options: IdempotentOptions) -> str:
        """``<prefix><user>:<METHOD>:<path>:<resolved key or payload digest>``"""
        part = resolve_key_template(options.key_resolver, snapshot) if options.key_resolver else ""
        if not part:
            part = snapshot.digest()
        return f"{options.key_prefix}{snapshot.user_id}:{snapshot.method}:{snapshot.path}:{part}"

    async def run(self, key: str, options: IdempotentOptions, fn: Callable[[], Awaitable[Any]]) -> Any:
        client = await self._client()
        marker = processing_marker(uuid4().hex)

        if not await client.set(key, marker, ex=options.timeout, nx=True):
            existing = await client.get(key)
            if existing is not None:
                if is_processing(existing):
                    logger.info("Duplicate request in flight", idempotency_key=key)
                    raise DuplicateRequestError(options.message, details={"key": key})
                logger.info("Replaying stored result", idempotency_key=key)
                return decode_result(existing)
            # entry vanished between SET NX and GET
            if not await client.set(key, marker, ex=options.timeout, nx=True):
                raise DuplicateRequestError(options.message, details={"key": key})

        try:
            result = await fn()
        except Exception:
            if options.delete_on_error:
                await self._discard(client, key, marker)
            raise

        await self._store(client, key, marker, result, options)
        return result

    async def _store(
        self, client: RedisClient, key: str, marker: str, result: Any, options: IdempotentOptions
    ) -> None:
        try:
            encoded = encode_result(result)
        except (TypeError, ValueError, AttributeError) as e:
            # streaming/file responses and unencodable values cannot be replayed
            logger.warning(
                "Idempotent result not storable",
                idempotency_key=key,
                result_type=type(result).__name__,
                error=str(e),
            )
            await self._discard(client, key, marker)
            return
        try:
            stored = await client.compare_and_set(key, marker, encoded, options.timeout)
        except CoordinationStoreError as e:
            logger.warning("Storing idempotent result failed", idempotency_key=key, error=str(e))
            await self._discard(client, key, marker)
            return
        if not stored:
            logger.warning("Idempotency marker lost before result was stored", idempotency_key=key)

    @staticmethod
    async def _discard(client: RedisClient, key: str, marker: str) -> None:
        try:
            await client.compare_and_delete(key, marker)
        except Exception as e:
            logger.warning("Idempotency key cleanup failed", idempotency_key=key, error=str(e))


class IdempotencyInterceptor(Interceptor):
    def __init__(self, options: Optional[IdempotentOptions] = None, guard: Optional[IdempotencyGuard] = None) -> None:
        self.options = options or IdempotentOptions()
        self.guard = guard or IdempotencyGuard()

    async def intercept(self, invocation: Invocation, call_next: CallNext) -> Any:
        key = self.guard.build_key(invocation.snapshot, self.options)
        return await self.guard.run(key, self.options, lambda: call_next(invocation))


def idempotent(
    *,
    timeout: Optional[int] = None,
    key_resolver: str = "",
    message: str = DEFAULT_DUPLICATE_MESSAGE,
    delete_on_error: bool = True,
    key_prefix: Optional[str] = None,
    guard: Optional[IdempotencyGuard] = None,
):
    """Endpoint decorator: replay the first successful result for repeated calls."""
    opts: dict = {"key_resolver": key_resolver, "message": message, "delete_on_error": delete_on_error}
    if timeout is not None:
        opts["timeout"] = timeout
    if key_prefix is not None:
        opts["key_prefix"] = key_prefix
    return intercept(IdempotencyInterceptor(IdempotentOptions(**opts), guard))
