"""
Role-derived data scope.

A user's roles each declare a ``DataScope``. The most permissive one wins
(lowest ``DataScope.breadth``, ALL first) and is resolved into the
concrete set of department ids the user may see:

    ALL             no restriction
    DEPT_CUSTOM     union of dept_ids on every DEPT_CUSTOM role
    DEPT_ONLY       the user's own department
    DEPT_AND_CHILD  own department plus its descendants
    SELF            rows owned by the user (filtered by user id)

``DataScopeFilterBuilder`` turns the resolved context into a mapping filter,
SQLAlchemy clauses or a parameterised raw SQL fragment.
"""
from __future__ import annotations

import re
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple, Type

from fastapi import Request
from pydantic import BaseModel, Field

from src.shared.logging import get_logger

logger = get_logger(__name__)

ADMIN_ROLE_KEY = "admin"
DATA_SCOPE_STATE_ATTR = "data_scope"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DataScope(IntEnum):
    ALL = 1
    DEPT_CUSTOM = 2
    DEPT_ONLY = 3
    DEPT_AND_CHILD = 4
    SELF = 5

    @property
    def breadth(self) -> int:
        """Sort key for picking the most permissive scope; lower sees more rows."""
        return _BREADTH[self]


# stored values follow the role table; DEPT_AND_CHILD covers DEPT_ONLY so it ranks first
_BREADTH = {
    DataScope.ALL: 0,
    DataScope.DEPT_CUSTOM: 1,
    DataScope.DEPT_AND_CHILD: 2,
    DataScope.DEPT_ONLY: 3,
    DataScope.SELF: 4,
}


class RoleGrant(BaseModel):
    role_key: str = ""
    data_scope: Optional[DataScope] = None
    dept_ids: List[int] = Field(default_factory=list)


class LoginUser(BaseModel):
    user_id: int = 0
    dept_id: Optional[int] = None
    is_admin: bool = False
    roles: List[RoleGrant] = Field(default_factory=list)
    child_dept_ids: List[int] = Field(default_factory=list)


class DataScopeOptions(BaseModel):
    enable: bool = True
    dept_alias: str = ""
    user_alias: str = ""
    dept_id_column: str = "dept_id"
    user_id_column: str = "user_id"


class DataScopeContext(BaseModel):
    enabled: bool
    data_scope: DataScope
    user_id: int
    dept_id: Optional[int]
    dept_ids: List[int]
    options: DataScopeOptions


class DataScopeResolver:
    @staticmethod
    def effective_scope(user: Optional[LoginUser]) -> DataScope:
        if user is None:
            return DataScope.SELF
        if user.is_admin or any(r.role_key == ADMIN_ROLE_KEY for r in user.roles):
            return DataScope.ALL
        if not user.roles:
            return DataScope.SELF
        return min((r.data_scope or DataScope.SELF for r in user.roles), key=lambda s: s.breadth)

    @staticmethod
    def accessible_dept_ids(user: Optional[LoginUser], scope: DataScope) -> List[int]:
        if user is None:
            return []
        if scope is DataScope.DEPT_CUSTOM:
            seen: Dict[int, None] = {}
            for role in user.roles:
                if role.data_scope is DataScope.DEPT_CUSTOM:
                    seen.update(dict.fromkeys(role.dept_ids))
            return list(seen)
        if scope is DataScope.DEPT_ONLY:
            return [user.dept_id] if user.dept_id else []
        if scope is DataScope.DEPT_AND_CHILD:
            ids = [user.dept_id] if user.dept_id else []
            ids.extend(d for d in user.child_dept_ids if d not in ids)
            return ids
        # ALL: unrestricted; SELF: filtered by user id instead
        return []

    @classmethod
    def resolve(cls, user: Optional[LoginUser], options: Optional[DataScopeOptions] = None) -> DataScopeContext:
        options = options or DataScopeOptions()
        user_id = user.user_id if user else 0
        dept_id = user.dept_id if user else None

        if not options.enable:
            return DataScopeContext(
                enabled=False,
                data_scope=DataScope.ALL,
                user_id=user_id,
                dept_id=dept_id,
                dept_ids=[],
                options=options,
            )

        scope = cls.effective_scope(user)
        return DataScopeContext(
            enabled=True,
            data_scope=scope,
            user_id=user_id,
            dept_id=dept_id,
            dept_ids=cls.accessible_dept_ids(user, scope),
            options=options,
        )


def _qualified(alias: str, column: str) -> str:
    for part in (alias, column):
        if part and not _IDENTIFIER.match(part):
            raise ValueError(f"Invalid SQL identifier: {part!r}")
    return f"{alias}.{column}" if alias else column


class DataScopeFilterBuilder:
    def __init__(self, context: Optional[DataScopeContext]) -> None:
        self.context = context

    def _active(self) -> bool:
        return self.context is not None and self.context.enabled

    def build_where(self) -> Dict[str, Any]:
        """Mapping filter, e.g. ``{"dept_id": {"in": [1, 2]}}`` or ``{"user_id": 7}``."""
        if not self._active():
            return {}
        ctx = self.context
        if ctx.data_scope is DataScope.SELF:
            return {ctx.options.user_id_column: ctx.user_id}
        if ctx.data_scope is DataScope.ALL or not ctx.dept_ids:
            return {}
        return {ctx.options.dept_id_column: {"in": list(ctx.dept_ids)}}

    def build_clauses(self, model: Type[Any]) -> List[Any]:
        """SQLAlchemy WHERE clauses against ``model``'s dept/user columns."""
        if not self._active():
            return []
        ctx = self.context
        if ctx.data_scope is DataScope.SELF:
            return [getattr(model, ctx.options.user_id_column) == ctx.user_id]
        if ctx.data_scope is DataScope.ALL or not ctx.dept_ids:
            return []
        return [getattr(model, ctx.options.dept_id_column).in_(ctx.dept_ids)]

    def build_raw_sql(self, table_alias: Optional[str] = None) -> Tuple[str, List[Any]]:
        """``(sql, params)`` with ``?`` placeholders; values are never inlined."""
        if not self._active():
            return "1=1", []
        ctx = self.context
        opts = ctx.options
        if ctx.data_scope is DataScope.SELF:
            alias = table_alias or opts.user_alias or opts.dept_alias
            return f"{_qualified(alias, opts.user_id_column)} = ?", [ctx.user_id]
        if ctx.data_scope is DataScope.ALL or not ctx.dept_ids:
            return "1=1", []
        alias = table_alias or opts.dept_alias
        placeholders = ",".join("?" for _ in ctx.dept_ids)
        return f"{_qualified(alias, opts.dept_id_column)} IN ({placeholders})", list(ctx.dept_ids)


def _current_user(request: Request) -> Optional[LoginUser]:
    user = getattr(request.state, "user", None)
    if user is None or isinstance(user, LoginUser):
        return user
    if isinstance(user, dict):
        return LoginUser.model_validate(user)
    return LoginUser.model_validate(user, from_attributes=True)


def data_scope(options: Optional[DataScopeOptions] = None):
    """
    FastAPI dependency factory:

        @router.get("/users")
        async def list_users(scope: DataScopeContext = Depends(data_scope())): ...
    """
    opts = options or DataScopeOptions()

    async def _dependency(request: Request) -> DataScopeContext:
        ctx = DataScopeResolver.resolve(_current_user(request), opts)
        setattr(request.state, DATA_SCOPE_STATE_ATTR, ctx)
        logger.debug("Data scope resolved", data_scope=ctx.data_scope.name, dept_ids=ctx.dept_ids)
        return ctx

    return _dependency
