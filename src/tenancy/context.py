# src/tenancy/context.py
"""
Tenant context carried implicitly through the async call graph.

The active ``TenantFrame`` lives in a ContextVar, so every asyncio task
spawned while a frame is active inherits it and two concurrent requests
never observe each other's frame. Frames nest as a stack: entering a
scope shadows the outer frame and leaving it restores the outer one.

Usage:
    with TenantContext.scope(TenantFrame(tenant_id="100001")):
        await service.list_users()

    # temporarily act as another tenant
    await TenantContext.run_with_tenant("100002", sync_users)

    # bootstrap / background code with no request frame
    await TenantContext.run_ignoring_tenant(load_all_tenants)
"""
from __future__ import annotations

import inspect
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar
from uuid import uuid4

from src.shared.exceptions import TenantContextMissingError
from src.tenancy.constants import SUPER_TENANT_ID

T = TypeVar("T")


def _new_request_id() -> str:
    return str(uuid4())


@dataclass
class TenantFrame:
    """One level of tenant context. Fields may be changed in place while active."""
    tenant_id: str
    ignore_tenant: bool = False
    request_id: str = field(default_factory=_new_request_id)

    def __post_init__(self) -> None:
        if not self.request_id:
            self.request_id = _new_request_id()


_current_frame: ContextVar[Optional[TenantFrame]] = ContextVar("tenant_frame", default=None)


class TenantContext:
    """Static accessors over the active tenant frame."""

    SUPER_TENANT_ID = SUPER_TENANT_ID

    # ---------- scoping ----------

    @staticmethod
    @contextmanager
    def scope(frame: TenantFrame) -> Iterator[TenantFrame]:
        """Make ``frame`` the active frame until the block exits."""
        token = _current_frame.set(frame)
        try:
            yield frame
        finally:
            _current_frame.reset(token)

    @classmethod
    def with_tenant(cls, tenant_id: str, *, ignore_tenant: bool = False):
        """Scope running as ``tenant_id``; keeps the current request id."""
        current = _current_frame.get()
        return cls.scope(
            TenantFrame(
                tenant_id=tenant_id,
                ignore_tenant=ignore_tenant,
                request_id=current.request_id if current else _new_request_id(),
            )
        )

    @classmethod
    def ignoring_tenant(cls):
        """Scope with tenant filtering switched off. Works without an outer frame."""
        current = _current_frame.get()
        return cls.scope(
            TenantFrame(
                tenant_id=current.tenant_id if current and current.tenant_id else SUPER_TENANT_ID,
                ignore_tenant=True,
                request_id=current.request_id if current else _new_request_id(),
            )
        )

    @classmethod
    def run(cls, frame: TenantFrame, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Execute ``fn`` with ``frame`` active.

        Coroutine functions are returned as an awaitable that keeps the
        frame active for the whole await, so both of these work:
            TenantContext.run(frame, sync_fn)
            await TenantContext.run(frame, async_fn)
        """
        return cls._invoke(lambda: cls.scope(frame), fn, args, kwargs)

    @classmethod
    async def run_async(cls, frame: TenantFrame, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Await ``fn`` (or any callable returning an awaitable) with ``frame`` active."""
        with cls.scope(frame):
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

    @classmethod
    def run_with_tenant(
        cls,
        tenant_id: str,
        fn: Callable[..., T],
        *args: Any,
        ignore_tenant: bool = False,
        **kwargs: Any,
    ) -> T:
        return cls._invoke(lambda: cls.with_tenant(tenant_id, ignore_tenant=ignore_tenant), fn, args, kwargs)

    @classmethod
    def run_ignoring_tenant(cls, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return cls._invoke(cls.ignoring_tenant, fn, args, kwargs)

    @staticmethod
    def _invoke(make_scope: Callable[[], Any], fn: Callable[..., Any], args: tuple, kwargs: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(fn):
            async def _run_async() -> Any:
                with make_scope():
                    return await fn(*args, **kwargs)
            return _run_async()
        with make_scope():
            return fn(*args, **kwargs)

    # ---------- accessors ----------

    @staticmethod
    def get_frame() -> Optional[TenantFrame]:
        return _current_frame.get()

    @staticmethod
    def has_context() -> bool:
        return _current_frame.get() is not None

    @staticmethod
    def get_tenant_id() -> Optional[str]:
        frame = _current_frame.get()
        return frame.tenant_id if frame else None

    @staticmethod
    def require_tenant_id() -> str:
        frame = _current_frame.get()
        if frame is None or not frame.tenant_id:
            raise TenantContextMissingError()
        return frame.tenant_id

    @staticmethod
    def set_tenant_id(tenant_id: str) -> None:
        """Update the active frame in place; no-op without a frame."""
        frame = _current_frame.get()
        if frame is not None:
            frame.tenant_id = tenant_id

    @staticmethod
    def get_request_id() -> Optional[str]:
        frame = _current_frame.get()
        return frame.request_id if frame else None

    @staticmethod
    def is_ignore_tenant() -> bool:
        frame = _current_frame.get()
        return frame.ignore_tenant if frame else False

    @staticmethod
    def set_ignore_tenant(ignore: bool) -> None:
        frame = _current_frame.get()
        if frame is not None:
            frame.ignore_tenant = ignore

    @classmethod
    def is_super_tenant(cls) -> bool:
        return cls.get_tenant_id() == SUPER_TENANT_ID

    @classmethod
    def should_apply_tenant_filter(cls) -> bool:
        """
        Filter by tenant unless:
          - there is no frame,
          - the frame ignores tenant filtering,
          - the frame runs as the super tenant.
        """
        frame = _current_frame.get()
        if frame is None or frame.ignore_tenant:
            return False
        return frame.tenant_id != SUPER_TENANT_ID

    @staticmethod
    def snapshot() -> Dict[str, object]:
        """Ready-to-log view of the active frame."""
        frame = _current_frame.get()
        if frame is None:
            return {}
        return {
            "tenant_id": frame.tenant_id,
            "ignore_tenant": frame.ignore_tenant,
            "request_id": frame.request_id,
        }
