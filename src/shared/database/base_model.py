"""
SQLAlchemy Declarative Base
All ORM models inherit from this
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Common behaviour is opted into via mixins:
    - TimestampMixin: created_at / updated_at
    - TenantScopedMixin: tenant_id, filtered automatically by tenancy.filters
    - VersionedMixin: integer version column guarded by optimistic locking
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }

    def __repr__(self) -> str:
        """String representation showing table name and primary key."""
        pk = [getattr(self, c.key, None) for c in self.__mapper__.primary_key]
        return f"<{self.__class__.__name__}(pk={pk})>"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=True,
    )


class TenantScopedMixin:
    """Rows owned by one tenant."""

    @declared_attr
    def tenant_id(cls) -> Mapped[str]:
        return mapped_column(String(20), nullable=False, index=True)


class VersionedMixin:
    """Rows updated with compare-and-swap on ``version``."""

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
