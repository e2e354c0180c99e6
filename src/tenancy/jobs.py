"""
Per-tenant background jobs.

``TenantJobExecutor.execute`` runs a handler once for every active tenant,
each invocation inside that tenant's frame so tenant filters apply as they
would for a request from that tenant.

    executor = TenantJobExecutor()

    async def rebuild_stats(ctx: TenantJobContext) -> None:
        ...

    results = await executor.execute(rebuild_stats, TenantJobOptions(parallel=True))
    logger.info("stats rebuilt", **executor.summarize(results).model_dump())

Services can also declare jobs with ``@tenant_job(...)``; the decorated method
then uses ``self.tenant_job_executor``.
"""
from __future__ import annotations

import asyncio
import functools
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.config import get_settings
from src.shared.database import get_session_factory
from src.shared.logging import get_logger
from src.tenancy.context import TenantContext
from src.tenancy.repository import TenantRepository

logger = get_logger(__name__)

TENANT_JOB_ATTR = "__tenant_job__"


def _default_max_concurrency() -> int:
    return get_settings().TENANT_JOB_MAX_CONCURRENCY


class TenantJobOptions(BaseModel):
    parallel: bool = False
    continue_on_error: bool = True
    max_concurrency: int = Field(default_factory=_default_max_concurrency, ge=1)


@dataclass(frozen=True)
class TenantJobContext:
    tenant_id: str
    tenant_name: str


class TenantJobResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    tenant_id: str
    success: bool
    duration: float  # milliseconds
    error: Optional[Exception] = None


class TenantJobSummary(BaseModel):
    total: int
    success: int
    failed: int
    total_duration: float
    average_duration: float


TenantJobHandler = Callable[[TenantJobContext], Union[Awaitable[Any], Any]]
TenantProvider = Callable[[], Awaitable[Sequence[TenantJobContext]]]


class TenantJobExecutor:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        tenant_provider: Optional[TenantProvider] = None,
    ) -> None:
        self._session_factory = session_factory
        self._tenant_provider = tenant_provider

    async def execute(
        self,
        handler: TenantJobHandler,
        options: Optional[TenantJobOptions] = None,
    ) -> List[TenantJobResult]:
        options = options or TenantJobOptions()
        tenants = await self._active_tenants()
        logger.info(
            "Starting tenant job",
            tenants=len(tenants),
            parallel=options.parallel,
            handler=getattr(handler, "__qualname__", repr(handler)),
        )
        if options.parallel:
            return await self._execute_parallel(tenants, handler, options)
        return await self._execute_serial(tenants, handler, options)

    async def _active_tenants(self) -> List[TenantJobContext]:
        if self._tenant_provider is not None:
            return list(await self._tenant_provider())

        factory = self._session_factory or get_session_factory()
        with TenantContext.ignoring_tenant():
            async with factory() as session:
                rows = await TenantRepository(session).list_active()
        return [TenantJobContext(tenant_id=r.tenant_id, tenant_name=r.company_name) for r in rows]

    async def _run_one(self, tenant: TenantJobContext, handler: TenantJobHandler) -> TenantJobResult:
        started = time.perf_counter()
        try:
            with TenantContext.with_tenant(tenant.tenant_id):
                outcome = handler(tenant)
                if inspect.isawaitable(outcome):
                    await outcome
        except Exception as e:
            logger.error("Tenant job failed", tenant_id=tenant.tenant_id, error=str(e), error_type=type(e).__name__)
            return TenantJobResult(
                tenant_id=tenant.tenant_id,
                success=False,
                error=e,
                duration=(time.perf_counter() - started) * 1000,
            )
        logger.debug("Tenant job completed", tenant_id=tenant.tenant_id)
        return TenantJobResult(
            tenant_id=tenant.tenant_id,
            success=True,
            duration=(time.perf_counter() - started) * 1000,
        )

    async def _execute_serial(
        self,
        tenants: Sequence[TenantJobContext],
        handler: TenantJobHandler,
        options: TenantJobOptions,
    ) -> List[TenantJobResult]:
        results: List[TenantJobResult] = []
        for tenant in tenants:
            result = await self._run_one(tenant, handler)
            results.append(result)
            if not result.success and not options.continue_on_error:
                logger.warning("Stopping tenant job after failure", tenant_id=tenant.tenant_id)
                break
        return results

    async def _execute_parallel(
        self,
        tenants: Sequence[TenantJobContext],
        handler: TenantJobHandler,
        options: TenantJobOptions,
    ) -> List[TenantJobResult]:
        results: List[TenantJobResult] = []
        size = options.max_concurrency
        for start in range(0, len(tenants), size):
            batch = tenants[start:start + size]
            batch_results = await asyncio.gather(*(self._run_one(t, handler) for t in batch))
            results.extend(batch_results)
            if not options.continue_on_error and any(not r.success for r in batch_results):
                logger.warning("Stopping tenant job after failed batch", batch_start=start)
                break
        return results

    @staticmethod
    def summarize(results: Sequence[TenantJobResult]) -> TenantJobSummary:
        total = len(results)
        success = sum(1 for r in results if r.success)
        total_duration = sum(r.duration for r in results)
        return TenantJobSummary(
            total=total,
            success=success,
            failed=total - success,
            total_duration=total_duration,
            average_duration=total_duration / total if total else 0.0,
        )


def tenant_job(options: Optional[TenantJobOptions] = None, executor: Optional[TenantJobExecutor] = None):
    """
    Turn ``async def job(self, ctx: TenantJobContext)`` into a method that runs
    once per active tenant and returns the list of ``TenantJobResult``.
    Without ``executor`` the instance's ``tenant_job_executor`` attribute is used.
    """
    opts = options or TenantJobOptions()

    def decorator(fn: Callable[..., Awaitable[Any]]):
        @functools.wraps(fn)
        async def wrapper(self, *args: Any, **kwargs: Any) -> List[TenantJobResult]:
            runner = executor or getattr(self, "tenant_job_executor", None)
            if runner is None:
                raise RuntimeError(f"{type(self).__name__} has no tenant_job_executor for {fn.__name__}")
            return await runner.execute(lambda ctx: fn(self, ctx, *args, **kwargs), opts)

        setattr(wrapper, TENANT_JOB_ATTR, opts)
        return wrapper

    return decorator
