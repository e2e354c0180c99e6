from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.shared.exceptions import TenantDisabledError, TenantExpiredError, TenantNotFoundError
from src.shared.logging import get_logger
from src.tenancy.constants import DEL_FLAG_NORMAL, SUPER_TENANT_ID, TENANT_STATUS_NORMAL
from src.tenancy.models import TenantModel

logger = get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class TenantRepository:
    """Reads over ``sys_tenant``. The table itself is not tenant scoped."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_active(self) -> List[TenantModel]:
        stmt = (
            select(TenantModel)
            .where(TenantModel.status == TENANT_STATUS_NORMAL, TenantModel.del_flag == DEL_FLAG_NORMAL)
            .order_by(TenantModel.tenant_id)
        )
        rows: Sequence[TenantModel] = (await self.session.execute(stmt)).scalars().all()
        return list(rows)

    async def get_by_tenant_id(self, tenant_id: str) -> Optional[TenantModel]:
        stmt = select(TenantModel).where(
            TenantModel.tenant_id == tenant_id,
            TenantModel.del_flag == DEL_FLAG_NORMAL,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def ensure_active(self, tenant_id: str) -> Optional[TenantModel]:
        """
        Raise when ``tenant_id`` cannot be served:
          - TenantNotFoundError: no such tenant (or soft-deleted)
          - TenantDisabledError: status is not normal
          - TenantExpiredError: expire_time has passed
        The super tenant always passes and returns None.
        """
        if tenant_id == SUPER_TENANT_ID:
            return None
        tenant = await self.get_by_tenant_id(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        if tenant.status != TENANT_STATUS_NORMAL:
            raise TenantDisabledError(tenant_id)
        if tenant.expire_time is not None and _as_utc(tenant.expire_time) < datetime.now(timezone.utc):
            logger.info("Tenant expired", tenant_id=tenant_id, expire_time=str(tenant.expire_time))
            raise TenantExpiredError(tenant_id)
        return tenant
