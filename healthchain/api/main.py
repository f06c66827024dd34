"""
HealthChain API - Main Application Entry Point

FastAPI backend for consent-gated access to patient records with a
time-limited, fully audited break-glass override.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from healthchain.api.access.errors import AccessControlError
from healthchain.api.config import settings
from healthchain.api.db.session import close_db, init_db
from healthchain.api.services.background_tasks import (
    close_background_workers,
    get_worker_manager,
    init_background_workers,
)

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Root logging for the service; audit records go through the same handlers."""
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    await init_db()
    await init_background_workers()
    logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)
    yield
    await close_background_workers()
    await close_db()


async def access_error_handler(request: Request, exc: AccessControlError) -> JSONResponse:
    """Fallback for access errors a route did not translate itself."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": {"code": exc.code, "message": exc.message}},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="HealthChain - consent-gated patient record access",
        docs_url="/api/docs" if settings.DEBUG else None,
        redoc_url="/api/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AccessControlError, access_error_handler)

    from healthchain.api.auth.routes import router as auth_router
    from healthchain.api.access.routes import (
        decisions_router,
        emergency_router,
        grants_router,
        tokens_router,
    )

    app.include_router(auth_router, prefix="/api/v1/auth", tags=["Authentication"])
    app.include_router(grants_router, prefix="/api/v1/grants", tags=["Grants"])
    app.include_router(tokens_router, prefix="/api/v1/tokens", tags=["Consent Tokens"])
    app.include_router(emergency_router, prefix="/api/v1/emergency", tags=["Break-Glass"])
    app.include_router(decisions_router, prefix="/api/v1", tags=["Access & Audit"])

    @app.get("/api/health", tags=["Health"])
    async def health_check():
        workers = {
            name: {"run_count": s.run_count, "error_count": s.error_count}
            for name, s in get_worker_manager().get_all_stats().items()
        }
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "service": settings.APP_NAME,
            "workers": workers,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "healthchain.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
