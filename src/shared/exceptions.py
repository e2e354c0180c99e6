from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.shared.error_codes import ERROR_CODES

logger = structlog.get_logger(__name__)


# ───────────────────────── Base & Domain Exceptions ─────────────────────────
class DomainError(Exception):
    """Base class for domain-level errors. Services should raise these, never HTTPException."""
    code: str = "domain_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    message: str
    details: Optional[Dict[str, Any]]

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        message = message or _msg_for(code or self.code, default=self.__class__.__name__)
        super().__init__(message)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        self.details = details


class NotFoundError(DomainError):
    # generic; set a specific code via constructor if needed (e.g., "user_not_found")
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(DomainError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class LockAcquireError(ConflictError):
    code = "lock_conflict"


class OptimisticLockError(ConflictError):
    code = "version_conflict"


class DuplicateRequestError(DomainError):
    code = "duplicate_request"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class CoordinationStoreError(DomainError):
    code = "coordination_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ForbiddenError(DomainError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


# ───────────────────────────── Tenant errors ────────────────────────────────
class TenantContextMissingError(DomainError):
    code = "tenant_context_missing"
    status_code = status.HTTP_401_UNAUTHORIZED


class TenantNotFoundError(NotFoundError):
    code = "tenant_not_found"

    def __init__(self, tenant_id: Optional[str] = None) -> None:
        super().__init__(
            f"Tenant not found: {tenant_id}" if tenant_id else "",
            details={"tenant_id": tenant_id} if tenant_id else None,
        )


class TenantDisabledError(ForbiddenError):
    code = "tenant_disabled"

    def __init__(self, tenant_id: Optional[str] = None) -> None:
        super().__init__(
            f"Tenant is disabled: {tenant_id}" if tenant_id else "",
            details={"tenant_id": tenant_id} if tenant_id else None,
        )


class TenantExpiredError(ForbiddenError):
    code = "tenant_expired"

    def __init__(self, tenant_id: Optional[str] = None) -> None:
        super().__init__(
            f"Tenant has expired: {tenant_id}" if tenant_id else "",
            details={"tenant_id": tenant_id} if tenant_id else None,
        )


class TenantQuotaExceededError(ForbiddenError):
    code = "tenant_quota_exceeded"

    def __init__(self, resource: str, current: int, limit: int) -> None:
        super().__init__(
            f"Tenant {resource} quota exhausted (used {current} of {limit})",
            details={"resource": resource, "current": current, "limit": limit},
        )


class TenantFeatureDisabledError(ForbiddenError):
    code = "tenant_feature_disabled"

    def __init__(self, feature: str) -> None:
        super().__init__(f"Feature {feature} is not enabled", details={"feature": feature})


class CrossTenantAccessError(ForbiddenError):
    code = "cross_tenant_access"




# ───────────────────────────── Helpers ──────────────────────────────────────

def _problem(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]],
    correlation_id: Optional[str],
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = details
    if correlation_id:
        body["correlation_id"] = correlation_id
    return body


def _extract_correlation_id(req: Request) -> Optional[str]:
    return getattr(getattr(req, "state", None), "request_id", None)


def _http_for(code: str) -> int:
    return int(ERROR_CODES.get(code, {}).get("http", status.HTTP_500_INTERNAL_SERVER_ERROR))


def _msg_for(code: str, default: Optional[str] = None) -> str:
    return str(ERROR_CODES.get(code, {}).get("message", default or code))


# ─────────────────────────── Registration ───────────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def handle_app_error(req: Request, exc: DomainError):
        # client errors (conflicts, duplicates, missing rows) are not server faults
        log = logger.error if exc.status_code >= 500 else logger.info
        log("Domain error", code=exc.code, status_code=exc.status_code, path=req.url.path)
        return JSONResponse(
            status_code=exc.status_code,
            content=_problem(exc.code, exc.message, exc.details, _extract_correlation_id(req)),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(req: Request, exc: RequestValidationError):
        code = "validation_error"
        return JSONResponse(
            status_code=_http_for(code),
            content=_problem(code, _msg_for(code), {"errors": jsonable_encoder(exc.errors())}, _extract_correlation_id(req)),
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(req: Request, exc: HTTPException):
        # map HTTP status → first matching ERROR_CODES entry
        reverse_map: Dict[int, str] = {}
        for key, value in ERROR_CODES.items():
            reverse_map.setdefault(value["http"], key)
        code = reverse_map.get(exc.status_code, "internal_error")
        detail = getattr(exc, "detail", None)
        details = detail if isinstance(detail, dict) else None
        return JSONResponse(
            status_code=exc.status_code,
            content=_problem(code, str(detail) if isinstance(detail, str) else _msg_for(code), details, _extract_correlation_id(req)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(req: Request, exc: Exception):
        code = "internal_error"
        logger.error("Unhandled error", path=req.url.path, error_type=exc.__class__.__name__, exc_info=exc)
        return JSONResponse(
            status_code=_http_for(code),
            content=_problem(code, _msg_for(code), {"type": exc.__class__.__name__}, _extract_correlation_id(req)),
        )
