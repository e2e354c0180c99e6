"""
Per-endpoint interceptor chains for FastAPI routes.

    @router.post("/orders/{id}/pay")
    @intercept(LockInterceptor(LockOptions(key="order:{id}")), IdempotencyInterceptor())
    async def pay(id: int, body: PayIn): ...

Interceptors run outer-first: the first one listed sees the call first and
the result last. Stacked ``@intercept`` decorators collapse into one chain.
"""
from __future__ import annotations

import functools
import inspect
import typing
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from src.coordination.request import RequestSnapshot

CallNext = Callable[["Invocation"], Awaitable[Any]]

_INJECTED_REQUEST = "coordination_request"
_WRAPPED_ATTR = "__intercepted__"
_CHAIN_ATTR = "__interceptors__"


@dataclass
class Invocation:
    snapshot: RequestSnapshot
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    request: Optional[Request] = None


class Interceptor(ABC):
    @abstractmethod
    async def intercept(self, invocation: Invocation, call_next: CallNext) -> Any:
        ...


def _bind(interceptor: Interceptor, call_next: CallNext) -> CallNext:
    async def _call(invocation: Invocation) -> Any:
        return await interceptor.intercept(invocation, call_next)
    return _call


def _resolved_signature(endpoint: Callable[..., Any]) -> inspect.Signature:
    # Resolve string annotations against the endpoint's own module; FastAPI would
    # otherwise evaluate them against this module's globals.
    sig = inspect.signature(endpoint)
    hints = typing.get_type_hints(endpoint, include_extras=True)
    params = [p.replace(annotation=hints.get(p.name, p.annotation)) for p in sig.parameters.values()]
    return sig.replace(parameters=params, return_annotation=hints.get("return", sig.return_annotation))


def _with_request_param(sig: inspect.Signature) -> inspect.Signature:
    params = list(sig.parameters.values())
    extra = inspect.Parameter(_INJECTED_REQUEST, inspect.Parameter.KEYWORD_ONLY, annotation=Request)
    idx = next((i for i, p in enumerate(params) if p.kind is inspect.Parameter.VAR_KEYWORD), len(params))
    params.insert(idx, extra)
    return sig.replace(parameters=params)


def intercept(*interceptors: Interceptor):
    """Wrap a FastAPI endpoint so ``interceptors`` run around every call."""

    def decorator(endpoint: Callable[..., Any]) -> Callable[..., Any]:
        inner = getattr(endpoint, _WRAPPED_ATTR, None)
        if inner is not None:
            return intercept(*interceptors, *getattr(endpoint, _CHAIN_ATTR))(inner)

        sig = _resolved_signature(endpoint)
        request_param = next(
            (p.name for p in sig.parameters.values() if p.annotation is Request),
            None,
        )
        injected = request_param is None

        async def call_endpoint(invocation: Invocation) -> Any:
            if inspect.iscoroutinefunction(endpoint):
                return await endpoint(*invocation.args, **invocation.kwargs)
            return await run_in_threadpool(endpoint, *invocation.args, **invocation.kwargs)

        chain: CallNext = call_endpoint
        for interceptor in reversed(interceptors):
            chain = _bind(interceptor, chain)

        @functools.wraps(endpoint)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            if injected:
                request = kwargs.pop(_INJECTED_REQUEST, None)
            else:
                request = kwargs.get(request_param)
            snapshot = await RequestSnapshot.from_request(request) if request is not None else RequestSnapshot()
            return await chain(Invocation(snapshot=snapshot, args=args, kwargs=kwargs, request=request))

        wrapper.__signature__ = _with_request_param(sig) if injected else sig  # type: ignore[attr-defined]
        setattr(wrapper, _WRAPPED_ATTR, endpoint)
        setattr(wrapper, _CHAIN_ATTR, interceptors)
        return wrapper

    return decorator
