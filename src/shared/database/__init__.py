from .base_model import Base, TenantScopedMixin, TimestampMixin, VersionedMixin
from .engine import (
    close_database_engine,
    create_database_engine,
    get_engine,
    get_session_factory,
    set_session_factory,
)
from .sessions import get_async_session, get_db_session

__all__ = [
    "Base",
    "TenantScopedMixin",
    "TimestampMixin",
    "VersionedMixin",
    "create_database_engine",
    "close_database_engine",
    "get_engine",
    "get_session_factory",
    "set_session_factory",
    "get_async_session",
    "get_db_session",
]
