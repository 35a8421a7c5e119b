"""
Main FastAPI application for the Service Jobs backend.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .exceptions import (
    ExternalServiceError,
    InvalidAmountError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ValidationFailedError,
)
from .routers.ai import router as ai_router
from .routers.config import router as config_router
from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.reports import router as reports_router
from .routers.tasks import router as tasks_router


settings = get_settings()
logger = logging.getLogger(__name__)

# Domain exception -> HTTP status
_STATUS_BY_EXCEPTION = {
    NotFoundError: 404,
    InvalidAmountError: 400,
    InvalidTransitionError: 409,
    PermissionDeniedError: 403,
    ValidationFailedError: 422,
    ExternalServiceError: 503,
}


async def _domain_error(request: Request, exc: Exception) -> JSONResponse:
    status_code = _STATUS_BY_EXCEPTION[type(exc)]
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def _rate_limited(request: Request, exc: RateLimitError) -> JSONResponse:
    return JSONResponse(status_code=429, content={"detail": exc.detail}, headers=exc.headers)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for exc_type in _STATUS_BY_EXCEPTION:
        app.add_exception_handler(exc_type, _domain_error)
    app.add_exception_handler(RateLimitError, _rate_limited)

    # Routers
    app.include_router(health_router, prefix=settings.API_PREFIX)
    app.include_router(config_router, prefix=settings.API_PREFIX)
    app.include_router(jobs_router, prefix=settings.API_PREFIX)
    app.include_router(reports_router, prefix=settings.API_PREFIX)
    app.include_router(ai_router, prefix=settings.API_PREFIX)
    app.include_router(tasks_router, prefix=settings.API_PREFIX)

    @app.get("/", tags=["root"])
    async def root() -> dict:
        """Simple root endpoint."""
        return {"name": app.title, "version": app.version}

    return app


app = create_app()
