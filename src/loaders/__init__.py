"""
Loaders - request-scoped batch loading
"""
from src.loaders.base import BatchLoader
from src.loaders.entity import EntityLoader
from src.loaders.registry import LoaderRegistry, entity_loader_factory, get_loaders

__all__ = ["BatchLoader", "EntityLoader", "LoaderRegistry", "entity_loader_factory", "get_loaders"]
