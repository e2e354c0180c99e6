from __future__ import annotations

from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from src.shared.config import get_settings
from src.shared.logging import bind_request_context, clear_request_context
from src.tenancy.constants import SUPER_TENANT_ID
from src.tenancy.context import TenantContext, TenantFrame

TENANT_QUERY_PARAM = "tenantId"


def _user_attr(request: Request, name: str) -> Optional[str]:
    user = getattr(request.state, "user", None)
    if user is None:
        return None
    value = user.get(name) if isinstance(user, dict) else getattr(user, name, None)
    return str(value) if value not in (None, "") else None


class TenantContextMiddleware(BaseHTTPMiddleware):
    """
    Opens a tenant frame for the whole request.

    Tenant id resolution order:
      1) authenticated user on request.state (``user.tenant_id``) or ``request.state.tenant_id``,
      2) the tenant header,
      3) the ``tenantId`` query parameter.
    Requests without a tenant run as the super tenant with filtering off.
    """

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)
        settings = get_settings()
        self.tenant_header = settings.TENANT_HEADER
        self.user_header = settings.USER_HEADER
        self.request_id_header = settings.REQUEST_ID_HEADER

    def _extract_tenant_id(self, request: Request) -> Optional[str]:
        return (
            _user_attr(request, "tenant_id")
            or getattr(request.state, "tenant_id", None)
            or request.headers.get(self.tenant_header)
            or request.query_params.get(TENANT_QUERY_PARAM)
        )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        tenant_id = self._extract_tenant_id(request)
        request_id = (
            getattr(request.state, "request_id", None)
            or request.headers.get(self.request_id_header)
            or str(uuid4())
        )
        request.state.request_id = request_id

        if tenant_id:
            frame = TenantFrame(tenant_id=tenant_id, request_id=request_id)
        else:
            frame = TenantFrame(tenant_id=SUPER_TENANT_ID, ignore_tenant=True, request_id=request_id)

        user_id = (
            _user_attr(request, "user_id")
            or getattr(request.state, "user_id", None)
            or request.headers.get(self.user_header)
        )

        try:
            with TenantContext.scope(frame):
                bind_request_context(
                    request_id=request_id,
                    tenant_id=frame.tenant_id,
                    user_id=user_id,
                    path=request.url.path,
                    method=request.method,
                )
                response = await call_next(request)
            response.headers[self.request_id_header] = request_id
            return response
        finally:
            clear_request_context()
