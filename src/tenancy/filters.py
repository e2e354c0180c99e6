"""
Tenant query filtering.

Two flavours are provided:
- mapping helpers (``add_tenant_filter`` / ``set_tenant_id``) for code that
  builds query arguments as plain dicts, keyed by model name;
- SQLAlchemy helpers (``tenant_criteria`` / ``install_tenant_filter``) for
  ORM models using ``TenantScopedMixin``.

Filters are no-ops unless ``TenantContext.should_apply_tenant_filter()``;
stamping falls back to the super tenant outside any frame.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

from sqlalchemy import event
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria
from sqlalchemy.sql.elements import ColumnElement

from src.shared.database.base_model import TenantScopedMixin
from src.shared.logging import get_logger
from src.tenancy.constants import SUPER_TENANT_ID, TENANT_MODELS
from src.tenancy.context import TenantContext

logger = get_logger(__name__)

TENANT_FIELD = "tenant_id"
SKIP_TENANT_FILTER = "skip_tenant_filter"


def has_tenant_field(model_name: str) -> bool:
    return model_name in TENANT_MODELS


# ---------------------------------------------------------------------
# Mapping helpers
# ---------------------------------------------------------------------


def add_tenant_filter(model_name: str, args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return query args with ``where.tenant_id`` set for tenant models."""
    args = dict(args or {})
    if not has_tenant_field(model_name) or not TenantContext.should_apply_tenant_filter():
        return args
    where = dict(args.get("where") or {})
    where[TENANT_FIELD] = TenantContext.get_tenant_id()
    args["where"] = where
    return args


def _stamp(row: Dict[str, Any], tenant_id: str) -> Dict[str, Any]:
    if row.get(TENANT_FIELD):
        return row
    return {**row, TENANT_FIELD: tenant_id}


def _stamping_tenant_id() -> str:
    # bootstrap code without a frame writes rows as the super tenant
    return TenantContext.get_tenant_id() or SUPER_TENANT_ID


def set_tenant_id(model_name: str, args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Stamp the current tenant on create data; an explicit tenant_id is kept."""
    args = dict(args or {})
    if not has_tenant_field(model_name):
        return args
    tenant_id = _stamping_tenant_id()
    data = args.get("data")
    if isinstance(data, dict):
        args["data"] = _stamp(data, tenant_id)
    return args


def set_tenant_id_for_many(model_name: str, args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    args = dict(args or {})
    if not has_tenant_field(model_name):
        return args
    tenant_id = _stamping_tenant_id()
    data = args.get("data")
    if isinstance(data, list):
        args["data"] = [_stamp(row, tenant_id) for row in data]
    return args


# ---------------------------------------------------------------------
# SQLAlchemy helpers
# ---------------------------------------------------------------------


def is_tenant_scoped(model: Type[Any]) -> bool:
    return isinstance(model, type) and issubclass(model, TenantScopedMixin)


def tenant_criteria(model: Type[Any]) -> List[ColumnElement[bool]]:
    """WHERE clauses restricting ``model`` to the active tenant (empty when not applicable)."""
    if not is_tenant_scoped(model) or not TenantContext.should_apply_tenant_filter():
        return []
    return [model.tenant_id == TenantContext.get_tenant_id()]


def _apply_tenant_criteria(execute_state: ORMExecuteState) -> None:
    if (
        not (execute_state.is_select or execute_state.is_update or execute_state.is_delete)
        or execute_state.is_column_load
        or execute_state.is_relationship_load
        or execute_state.execution_options.get(SKIP_TENANT_FILTER, False)
        or not TenantContext.should_apply_tenant_filter()
    ):
        return
    tenant_id = TenantContext.get_tenant_id()
    execute_state.statement = execute_state.statement.options(
        with_loader_criteria(
            TenantScopedMixin,
            lambda cls: cls.tenant_id == tenant_id,
            include_aliases=True,
        )
    )


def _stamp_new_rows(session: Session, flush_context: Any, instances: Any) -> None:
    tenant_id = _stamping_tenant_id()
    for obj in session.new:
        if isinstance(obj, TenantScopedMixin) and not getattr(obj, TENANT_FIELD, None):
            obj.tenant_id = tenant_id


def install_tenant_filter(session_class: Type[Session] = Session) -> None:
    """
    Register ORM hooks on ``session_class``:
      - SELECT, UPDATE and DELETE get ``tenant_id = <current>`` for every
        TenantScopedMixin entity;
      - new TenantScopedMixin rows without a tenant get the current one, or the
        super tenant outside any frame.
    Pass ``execution_options(skip_tenant_filter=True)`` to opt a query out.
    """
    if not event.contains(session_class, "do_orm_execute", _apply_tenant_criteria):
        event.listen(session_class, "do_orm_execute", _apply_tenant_criteria)
    if not event.contains(session_class, "before_flush", _stamp_new_rows):
        event.listen(session_class, "before_flush", _stamp_new_rows)
    logger.debug("Tenant filter installed", session_class=session_class.__name__)
