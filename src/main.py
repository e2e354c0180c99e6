from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.loaders.registry import FACTORIES_STATE_ATTR, LoaderFactory
from src.shared import redis as coordination_store
from src.shared.config import get_settings
from src.shared.database import close_database_engine, create_database_engine
from src.shared.exceptions import CoordinationStoreError, register_exception_handlers
from src.shared.logging import get_logger, setup_logging
from src.tenancy.filters import install_tenant_filter
from src.tenancy.middleware import TenantContextMiddleware

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    install_tenant_filter()
    await coordination_store.redis_client.connect()
    await create_database_engine(settings.DATABASE_URL)
    logger.info("Application started", app=settings.PROJECT_NAME, environment=settings.ENVIRONMENT)
    try:
        yield
    finally:
        await close_database_engine()
        await coordination_store.redis_client.close()
        logger.info("Application stopped")


def create_app(loader_factories: Optional[Mapping[str, LoaderFactory]] = None) -> FastAPI:
    settings = get_settings()
    setup_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.PROJECT_VERSION,
        lifespan=lifespan,
    )
    setattr(app.state, FACTORIES_STATE_ATTR, dict(loader_factories or {}))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
        expose_headers=[settings.REQUEST_ID_HEADER],
    )
    # tenant frame + request id for everything below
    app.add_middleware(TenantContextMiddleware)

    # Centralized error handling → {code, message, details?, correlation_id?}
    register_exception_handlers(app)

    @app.get("/_health", tags=["Health"])
    async def health() -> Dict[str, Any]:
        try:
            redis_ok = await coordination_store.redis_client.ping()
        except CoordinationStoreError:
            redis_ok = False
        return {"status": "ok" if redis_ok else "degraded", "redis": redis_ok}

    return app


app = create_app()
