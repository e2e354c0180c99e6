from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Generic, Hashable, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

from src.shared.logging import get_logger

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class BatchLoader(ABC, Generic[K, V]):
    """
    Coalesces ``load`` calls made in the same event-loop tick into one
    ``batch_load`` call.

    ``load`` is a plain method returning a future, so callers can fan out
    with ``asyncio.gather`` and every key lands in the same batch:

        users = await asyncio.gather(*(loader.load(i) for i in ids))

    Results are memoised per key for the loader's lifetime; create one loader
    per request (see ``LoaderRegistry``).
    """

    def __init__(self, cache: bool = True) -> None:
        self._cache_enabled = cache
        self._cache: Dict[K, "asyncio.Future[Optional[V]]"] = {}
        self._queue: List[Tuple[K, "asyncio.Future[Optional[V]]"]] = []
        self._scheduled = False
        self._tasks: Set["asyncio.Task[None]"] = set()

    @abstractmethod
    async def batch_load(self, keys: Sequence[K]) -> Sequence[Optional[V]]:
        """Fetch ``keys`` (distinct, in first-request order); one value or None per key, same order."""

    def load(self, key: K) -> "asyncio.Future[Optional[V]]":
        if self._cache_enabled and key in self._cache:
            return self._cache[key]

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Optional[V]]" = loop.create_future()
        if self._cache_enabled:
            self._cache[key] = future
        self._queue.append((key, future))
        if not self._scheduled:
            self._scheduled = True
            loop.call_soon(self._dispatch)
        return future

    async def load_many(self, keys: Iterable[K]) -> List[Optional[V]]:
        return list(await asyncio.gather(*(self.load(k) for k in keys)))

    def prime(self, key: K, value: Optional[V]) -> None:
        """Seed the cache; an existing entry wins."""
        if not self._cache_enabled or key in self._cache:
            return
        future: "asyncio.Future[Optional[V]]" = asyncio.get_running_loop().create_future()
        future.set_result(value)
        self._cache[key] = future

    def clear(self, key: Optional[K] = None) -> None:
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    def _dispatch(self) -> None:
        batch, self._queue = self._queue, []
        self._scheduled = False
        if not batch:
            return
        task = asyncio.ensure_future(self._run_batch(batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_batch(self, batch: List[Tuple[K, "asyncio.Future[Optional[V]]"]]) -> None:
        keys = list(dict.fromkeys(key for key, _ in batch))
        try:
            values = list(await self.batch_load(keys))
            if len(values) != len(keys):
                raise ValueError(
                    f"{type(self).__name__}.batch_load returned {len(values)} values for {len(keys)} keys"
                )
        except Exception as e:
            logger.warning("Batch load failed", loader=type(self).__name__, keys=len(keys), error=str(e))
            for key, future in batch:
                self._cache.pop(key, None)
                if not future.done():
                    future.set_exception(e)
            return

        by_key = dict(zip(keys, values))
        for key, future in batch:
            if not future.done():
                future.set_result(by_key.get(key))
