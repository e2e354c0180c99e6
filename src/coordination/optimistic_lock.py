from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.coordination.interceptors import CallNext, Interceptor, Invocation, intercept
from src.coordination.request import RequestSnapshot
from src.shared.database import get_session_factory
from src.shared.exceptions import NotFoundError, OptimisticLockError
from src.shared.logging import get_logger
from src.tenancy.filters import tenant_criteria

logger = get_logger(__name__)

TModel = TypeVar("TModel")

DEFAULT_CONFLICT_MESSAGE = "Data was modified by another user, please refresh and retry"

_SOURCES = ("body", "query", "params")


class OptimisticLockOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: Type[Any]
    id_field: str = "id"
    id_path: str = "body.id"
    version_field: str = "version"
    version_path: str = "body.version"
    message: str = DEFAULT_CONFLICT_MESSAGE


def value_at_path(snapshot: RequestSnapshot, path: str) -> Any:
    """``body.a.b`` style lookup into the snapshot; None when any hop is missing."""
    source, _, rest = path.partition(".")
    if source not in _SOURCES or not rest:
        return None
    value: Any = getattr(snapshot, source)
    for part in rest.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
        if value is None:
            return None
    return value


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_to_column(model: Type[Any], field: str, value: Any) -> Any:
    try:
        python_type = model.__table__.c[field].type.python_type
    except (KeyError, NotImplementedError):
        return value
    if isinstance(value, python_type):
        return value
    try:
        return python_type(value)
    except (TypeError, ValueError):
        return value


class OptimisticLockInterceptor(Interceptor):
    """
    Version check before the handler runs.

    The check is advisory: the handler's own write must still be conditional
    (see ``optimistic_update``), which closes the window between this read and
    that write.
    """

    def __init__(
        self,
        options: OptimisticLockOptions,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.options = options
        self._session_factory = session_factory

    async def current_version(self, entity_id: Any) -> Optional[int]:
        opts = self.options
        model = opts.model
        factory = self._session_factory or get_session_factory()
        stmt = select(getattr(model, opts.version_field)).where(
            getattr(model, opts.id_field) == _coerce_to_column(model, opts.id_field, entity_id),
            *tenant_criteria(model),
        )
        async with factory() as session:
            row = (await session.execute(stmt)).first()
        return None if row is None else row[0]

    async def intercept(self, invocation: Invocation, call_next: CallNext) -> Any:
        opts = self.options
        entity_id = value_at_path(invocation.snapshot, opts.id_path)
        declared = value_at_path(invocation.snapshot, opts.version_path)
        if entity_id is None or declared is None:
            return await call_next(invocation)

        current = await self.current_version(entity_id)
        if current is None:
            raise NotFoundError(
                f"{opts.model.__name__} not found",
                details={"id": entity_id},
            )
        if _coerce_int(declared) != current:
            logger.info(
                "Version conflict",
                model=opts.model.__name__,
                entity_id=entity_id,
                expected=declared,
                current=current,
            )
            raise OptimisticLockError(
                opts.message,
                details={"id": entity_id, "expected_version": declared, "current_version": current},
            )

        self._inject_version(invocation, current + 1)
        return await call_next(invocation)

    def _inject_version(self, invocation: Invocation, next_version: int) -> None:
        field = self.options.version_field
        invocation.snapshot.body[field] = next_version
        for value in list(invocation.args) + list(invocation.kwargs.values()):
            if isinstance(value, BaseModel) and field in type(value).model_fields:
                setattr(value, field, next_version)
            elif isinstance(value, dict) and field in value:
                value[field] = next_version


def optimistic_lock(
    model: Type[Any],
    *,
    id_field: str = "id",
    id_path: str = "body.id",
    version_field: str = "version",
    version_path: str = "body.version",
    message: str = DEFAULT_CONFLICT_MESSAGE,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
):
    """Endpoint decorator: reject the call when the declared version is stale."""
    options = OptimisticLockOptions(
        model=model,
        id_field=id_field,
        id_path=id_path,
        version_field=version_field,
        version_path=version_path,
        message=message,
    )
    return intercept(OptimisticLockInterceptor(options, session_factory))


async def optimistic_update(
    session: AsyncSession,
    model: Type[TModel],
    where: Dict[str, Any],
    expected_version: int,
    data: Dict[str, Any],
    version_field: str = "version",
) -> TModel:
    """
    ``UPDATE model SET data, version = expected + 1 WHERE <where> AND version = expected``.

    Zero affected rows is the authoritative conflict signal and raises
    OptimisticLockError; otherwise the refreshed row is returned. The caller
    owns the transaction.
    """
    conditions = [getattr(model, k) == v for k, v in where.items()]
    conditions.extend(tenant_criteria(model))
    version_col = getattr(model, version_field)

    stmt = (
        update(model)
        .where(*conditions, version_col == expected_version)
        .values({**data, version_field: expected_version + 1})
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        logger.info("Conditional update matched no rows", model=model.__name__, where=where, expected=expected_version)
        raise OptimisticLockError(DEFAULT_CONFLICT_MESSAGE, details={"expected_version": expected_version})

    refreshed = await session.execute(
        select(model).where(*conditions).execution_options(populate_existing=True)
    )
    return refreshed.scalar_one()
