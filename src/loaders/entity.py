from __future__ import annotations

from typing import Any, Dict, Generic, Hashable, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.loaders.base import BatchLoader
from src.tenancy.filters import tenant_criteria

TModel = TypeVar("TModel")
K = TypeVar("K", bound=Hashable)


class EntityLoader(BatchLoader[K, TModel], Generic[K, TModel]):
    """
    Batched ``SELECT ... WHERE <key_column> IN (...)`` for one ORM model,
    restricted to the active tenant and any extra ``criteria``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        model: Type[TModel],
        key_column: str = "id",
        criteria: Sequence[Any] = (),
        cache: bool = True,
    ) -> None:
        super().__init__(cache=cache)
        self.session_factory = session_factory
        self.model = model
        self.key_column = key_column
        self.criteria = tuple(criteria)

    def _where(self) -> List[Any]:
        return [*self.criteria, *tenant_criteria(self.model)]

    async def batch_load(self, keys: Sequence[K]) -> List[Optional[TModel]]:
        column = getattr(self.model, self.key_column)
        stmt = select(self.model).where(column.in_(list(keys)), *self._where())
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        by_key = {getattr(row, self.key_column): row for row in rows}
        return [by_key.get(key) for key in keys]

    async def load_grouped(
        self,
        column: str,
        values: Sequence[Any],
        order_by: Optional[str] = None,
    ) -> Dict[Any, List[TModel]]:
        """One query for every row whose ``column`` is in ``values``, grouped by value."""
        grouped: Dict[Any, List[TModel]] = {value: [] for value in values}
        if not values:
            return grouped
        stmt = select(self.model).where(getattr(self.model, column).in_(list(values)), *self._where())
        if order_by:
            stmt = stmt.order_by(getattr(self.model, order_by))
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        for row in rows:
            grouped.setdefault(getattr(row, column), []).append(row)
        return grouped
