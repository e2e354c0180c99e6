"""
Tenant constants and cache key helpers.

Every cache key that holds tenant data must be built through
``get_tenant_cache_key`` so two tenants never share an entry.
"""
from __future__ import annotations

from datetime import date
from typing import Optional, Union

# Super tenant: exempt from per-tenant filtering (platform administration)
SUPER_TENANT_ID = "000000"

# sys_tenant.status / del_flag values
TENANT_STATUS_NORMAL = "0"
TENANT_STATUS_DISABLED = "1"
DEL_FLAG_NORMAL = "0"
DEL_FLAG_DELETED = "1"

# ORM models that carry a tenant_id column and are filtered automatically
TENANT_MODELS = frozenset(
    {
        "SysConfig",
        "SysDept",
        "SysDictData",
        "SysDictType",
        "SysJob",
        "SysLogininfor",
        "SysMenu",
        "SysNotice",
        "SysOperLog",
        "SysPost",
        "SysRole",
        "SysUpload",
        "SysUser",
        "SysFileFolder",
        "SysFileShare",
        "SysAuditLog",
        "SysTenantFeature",
        "SysTenantUsage",
    }
)


class CACHE_PREFIX:
    TENANT_FEATURE = "tenant:feature:"
    TENANT_QUOTA = "tenant:quota:"
    TENANT_USAGE = "tenant:usage:"
    TENANT_INFO = "tenant:info:"
    USER_INFO = "user:info:"
    ROLE_INFO = "role:info:"
    DEPT_INFO = "dept:info:"
    MENU_INFO = "menu:info:"
    DICT_INFO = "dict:info:"
    CONFIG_INFO = "config:info:"


class CACHE_TTL:
    """Cache lifetimes in seconds."""
    SHORT = 60
    MEDIUM = 300
    LONG = 1800
    EXTRA_LONG = 3600


def get_tenant_cache_key(prefix: str, tenant_id: str, key: Optional[str] = None) -> str:
    if key:
        return f"{prefix}{tenant_id}:{key}"
    return f"{prefix}{tenant_id}"


def get_feature_cache_key(tenant_id: str) -> str:
    return get_tenant_cache_key(CACHE_PREFIX.TENANT_FEATURE, tenant_id)


def get_quota_cache_key(tenant_id: str) -> str:
    return get_tenant_cache_key(CACHE_PREFIX.TENANT_QUOTA, tenant_id)


def get_usage_cache_key(tenant_id: str, resource: str, day: Optional[Union[date, str]] = None) -> str:
    day_str = str(day) if day else date.today().isoformat()
    return get_tenant_cache_key(CACHE_PREFIX.TENANT_USAGE, tenant_id, f"{resource}:{day_str}")


def get_tenant_info_cache_key(tenant_id: str) -> str:
    return get_tenant_cache_key(CACHE_PREFIX.TENANT_INFO, tenant_id)


def get_user_cache_key(tenant_id: str, user_id: Union[int, str]) -> str:
    return get_tenant_cache_key(CACHE_PREFIX.USER_INFO, tenant_id, str(user_id))


def get_role_cache_key(tenant_id: str, role_id: Union[int, str]) -> str:
    return get_tenant_cache_key(CACHE_PREFIX.ROLE_INFO, tenant_id, str(role_id))


def get_dept_cache_key(tenant_id: str, dept_id: Union[int, str]) -> str:
    return get_tenant_cache_key(CACHE_PREFIX.DEPT_INFO, tenant_id, str(dept_id))


def get_menu_cache_key(tenant_id: str, menu_id: Optional[Union[int, str]] = None) -> str:
    return get_tenant_cache_key(CACHE_PREFIX.MENU_INFO, tenant_id, str(menu_id) if menu_id else None)


def get_dict_cache_key(tenant_id: str, dict_type: Optional[str] = None) -> str:
    return get_tenant_cache_key(CACHE_PREFIX.DICT_INFO, tenant_id, dict_type)


def get_config_cache_key(tenant_id: str, config_key: Optional[str] = None) -> str:
    return get_tenant_cache_key(CACHE_PREFIX.CONFIG_INFO, tenant_id, config_key)
