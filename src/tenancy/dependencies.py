from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.shared.database import get_db_session
from src.tenancy.context import TenantContext
from src.tenancy.repository import TenantRepository


async def require_active_tenant(session: AsyncSession = Depends(get_db_session)) -> str:
    """
    Route dependency: the request must carry a tenant that exists, is enabled
    and has not expired. Returns the tenant id.
    """
    tenant_id = TenantContext.require_tenant_id()
    await TenantRepository(session).ensure_active(tenant_id)
    return tenant_id
