import pytest
from sqlalchemy import delete, select, update

from src.tenancy.constants import (
    CACHE_PREFIX,
    SUPER_TENANT_ID,
    get_config_cache_key,
    get_dept_cache_key,
    get_dict_cache_key,
    get_feature_cache_key,
    get_menu_cache_key,
    get_quota_cache_key,
    get_role_cache_key,
    get_tenant_cache_key,
    get_tenant_info_cache_key,
    get_usage_cache_key,
    get_user_cache_key,
)
from src.tenancy.context import TenantContext
from src.tenancy.filters import (
    add_tenant_filter,
    has_tenant_field,
    set_tenant_id,
    set_tenant_id_for_many,
    tenant_criteria,
)
from tests.models import Order


def test_has_tenant_field():
    assert has_tenant_field("SysUser") is True
    assert has_tenant_field("SysTenant") is False


def test_add_tenant_filter_only_inside_tenant_frame():
    args = {"where": {"status": "0"}}
    assert add_tenant_filter("SysUser", args) == args
    with TenantContext.with_tenant("100001"):
        assert add_tenant_filter("SysUser", args) == {"where": {"status": "0", "tenant_id": "100001"}}
        assert add_tenant_filter("SysTenant", args) == args
        assert add_tenant_filter("SysUser", None) == {"where": {"tenant_id": "100001"}}
    # input args untouched
    assert args == {"where": {"status": "0"}}


def test_add_tenant_filter_skipped_for_super_and_ignore():
    with TenantContext.with_tenant(SUPER_TENANT_ID):
        assert add_tenant_filter("SysUser", {}) == {}
    with TenantContext.with_tenant("100001", ignore_tenant=True):
        assert add_tenant_filter("SysUser", {}) == {}


def test_set_tenant_id_never_overwrites_explicit_value():
    with TenantContext.with_tenant("100001"):
        assert set_tenant_id("SysUser", {"data": {"name": "a"}}) == {"data": {"name": "a", "tenant_id": "100001"}}
        assert set_tenant_id("SysUser", {"data": {"tenant_id": "200002"}}) == {"data": {"tenant_id": "200002"}}
        assert set_tenant_id("SysUser", None) == {}


def test_set_tenant_id_without_frame_uses_super_tenant():
    assert set_tenant_id("SysUser", {"data": {"name": "boot"}}) == {
        "data": {"name": "boot", "tenant_id": SUPER_TENANT_ID}
    }
    assert set_tenant_id_for_many("SysDept", {"data": [{"name": "a"}]}) == {
        "data": [{"name": "a", "tenant_id": SUPER_TENANT_ID}]
    }
    assert set_tenant_id("SysTenant", {"data": {"name": "boot"}}) == {"data": {"name": "boot"}}


def test_set_tenant_id_for_many():
    with TenantContext.with_tenant("100001"):
        out = set_tenant_id_for_many("SysDept", {"data": [{"name": "a"}, {"name": "b", "tenant_id": "9"}]})
    assert out == {"data": [{"name": "a", "tenant_id": "100001"}, {"name": "b", "tenant_id": "9"}]}


def test_tenant_criteria():
    assert tenant_criteria(Order) == []
    with TenantContext.with_tenant("100001"):
        clauses = tenant_criteria(Order)
    assert len(clauses) == 1
    assert "tenant_id" in str(clauses[0])


def test_cache_keys_are_tenant_scoped():
    assert get_tenant_cache_key("user:info:", "100001", "7") == "user:info:100001:7"
    assert get_tenant_cache_key("tenant:info:", "100001") == "tenant:info:100001"
    assert get_dept_cache_key("100001", 3) != get_dept_cache_key("100002", 3)
    assert get_usage_cache_key("100001", "api", "2024-01-01") == "tenant:usage:100001:api:2024-01-01"


def test_per_kind_cache_keys():
    assert get_feature_cache_key("100001") == "tenant:feature:100001"
    assert get_quota_cache_key("100001") == "tenant:quota:100001"
    assert get_tenant_info_cache_key("100001") == "tenant:info:100001"
    assert get_user_cache_key("100001", 7) == "user:info:100001:7"
    assert get_role_cache_key("100001", "2") == "role:info:100001:2"
    assert get_menu_cache_key("100001") == "menu:info:100001"
    assert get_menu_cache_key("100001", 5) == "menu:info:100001:5"
    assert get_dict_cache_key("100001", "sys_status") == "dict:info:100001:sys_status"
    assert get_config_cache_key("100001") == CACHE_PREFIX.CONFIG_INFO + "100001"
    assert get_usage_cache_key("100001", "api").startswith("tenant:usage:100001:api:")


@pytest.mark.asyncio
async def test_orm_hook_filters_selects_and_stamps_inserts(session_factory):
    async with session_factory() as session:
        with TenantContext.with_tenant("100001"):
            session.add(Order(id=1, name="mine"))
            await session.flush()
        with TenantContext.with_tenant("100002"):
            session.add(Order(id=2, name="theirs"))
            await session.flush()
        await session.commit()

    async with session_factory() as session:
        with TenantContext.with_tenant("100001"):
            orders = (await session.execute(select(Order))).scalars().all()
        assert [o.name for o in orders] == ["mine"]
        assert orders[0].tenant_id == "100001"

        with TenantContext.ignoring_tenant():
            everything = (await session.execute(select(Order).order_by(Order.id))).scalars().all()
        assert [o.name for o in everything] == ["mine", "theirs"]

        with TenantContext.with_tenant("100001"):
            opted_out = (
                await session.execute(select(Order).execution_options(skip_tenant_filter=True))
            ).scalars().all()
        assert len(opted_out) == 2


@pytest.mark.asyncio
async def test_orm_hook_scopes_updates_and_deletes(session_factory):
    async with session_factory() as session:
        session.add_all([
            Order(id=1, name="mine", tenant_id="100001"),
            Order(id=2, name="theirs", tenant_id="100002"),
        ])
        await session.commit()

    async with session_factory() as session:
        with TenantContext.with_tenant("100001"):
            deleted = await session.execute(delete(Order).where(Order.id == 2))
            updated = await session.execute(update(Order).values(name="renamed"))
        await session.commit()
    assert deleted.rowcount == 0
    assert updated.rowcount == 1

    async with session_factory() as session:
        with TenantContext.ignoring_tenant():
            rows = (await session.execute(select(Order).order_by(Order.id))).scalars().all()
    assert [(o.id, o.name) for o in rows] == [(1, "renamed"), (2, "theirs")]


@pytest.mark.asyncio
async def test_rows_inserted_without_a_frame_belong_to_super_tenant(session_factory):
    async with session_factory() as session:
        session.add(Order(id=1, name="seed"))
        await session.commit()

    async with session_factory() as session:
        with TenantContext.ignoring_tenant():
            row = (await session.execute(select(Order))).scalar_one()
    assert row.tenant_id == SUPER_TENANT_ID
