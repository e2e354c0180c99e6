from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.shared.database.base_model import Base, TimestampMixin
from src.tenancy.constants import DEL_FLAG_NORMAL, TENANT_STATUS_NORMAL


class TenantModel(Base, TimestampMixin):
    __tablename__ = "sys_tenant"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(20), nullable=False, unique=True, index=True)
    company_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(1), nullable=False, default=TENANT_STATUS_NORMAL)
    del_flag: Mapped[str] = mapped_column(String(1), nullable=False, default=DEL_FLAG_NORMAL)
    expire_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
