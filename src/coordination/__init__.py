"""
Coordination - request-scoped interceptors
Distributed lock, idempotency guard and optimistic version checks for FastAPI endpoints
"""
from src.coordination.idempotency import IdempotencyGuard, IdempotencyInterceptor, IdempotentOptions, idempotent
from src.coordination.interceptors import Interceptor, Invocation, intercept
from src.coordination.lock import DistributedLock, LockHandle, LockInterceptor, LockOptions, distributed_lock
from src.coordination.optimistic_lock import (
    OptimisticLockInterceptor,
    OptimisticLockOptions,
    optimistic_lock,
    optimistic_update,
)
from src.coordination.request import RequestSnapshot, resolve_key_template

__all__ = [
    "Interceptor",
    "Invocation",
    "intercept",
    "RequestSnapshot",
    "resolve_key_template",
    "DistributedLock",
    "LockHandle",
    "LockOptions",
    "LockInterceptor",
    "distributed_lock",
    "IdempotencyGuard",
    "IdempotencyInterceptor",
    "IdempotentOptions",
    "idempotent",
    "OptimisticLockInterceptor",
    "OptimisticLockOptions",
    "optimistic_lock",
    "optimistic_update",
]
