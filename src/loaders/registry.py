from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Type

from fastapi import Request

from src.loaders.base import BatchLoader
from src.loaders.entity import EntityLoader
from src.shared.database import get_session_factory

LoaderFactory = Callable[[], BatchLoader[Any, Any]]

LOADERS_STATE_ATTR = "loaders"
FACTORIES_STATE_ATTR = "loader_factories"


class LoaderRegistry:
    """One loader per kind, created on first use. Lives for a single request."""

    def __init__(self, factories: Optional[Mapping[str, LoaderFactory]] = None) -> None:
        self._factories: Dict[str, LoaderFactory] = dict(factories or {})
        self._loaders: Dict[str, BatchLoader[Any, Any]] = {}

    def register(self, name: str, factory: LoaderFactory) -> None:
        self._factories[name] = factory
        self._loaders.pop(name, None)

    def get(self, name: str) -> BatchLoader[Any, Any]:
        loader = self._loaders.get(name)
        if loader is None:
            try:
                factory = self._factories[name]
            except KeyError:
                raise KeyError(f"No loader registered for {name!r}") from None
            loader = self._loaders[name] = factory()
        return loader

    __getitem__ = get

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def clear(self) -> None:
        for loader in self._loaders.values():
            loader.clear()
        self._loaders.clear()


def entity_loader_factory(model: Type[Any], key_column: str = "id", criteria: Sequence[Any] = ()) -> LoaderFactory:
    """Factory for ``app.state.loader_factories`` binding the process session factory."""
    def _factory() -> BatchLoader[Any, Any]:
        return EntityLoader(get_session_factory(), model, key_column, criteria)
    return _factory


def get_loaders(request: Request) -> LoaderRegistry:
    """
    FastAPI dependency. The registry is kept on ``request.state`` so every
    dependency and the endpoint of one request share it, and it is dropped
    with the request.
    """
    registry = getattr(request.state, LOADERS_STATE_ATTR, None)
    if registry is None:
        factories = getattr(request.app.state, FACTORIES_STATE_ATTR, None) or {}
        registry = LoaderRegistry(factories)
        setattr(request.state, LOADERS_STATE_ATTR, registry)
    return registry
