"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from consultpay.api.v1.router import api_router
from consultpay.config import settings
from consultpay.core.exceptions import AppException, GatewayError
from consultpay.core.immutability import register_immutability_enforcement
from consultpay.core.middleware import (
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from consultpay.database import close_db, init_db

logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying after a gateway outage.
GATEWAY_RETRY_AFTER = "30"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    register_immutability_enforcement()
    if settings.debug:
        await init_db()
    logger.info(
        f"{settings.app_name} {settings.app_version} up ({settings.environment}), "
        f"commission={settings.platform_commission_rate} "
        f"dispute_window={settings.dispute_window_hours}h"
    )

    yield

    await close_db()
    logger.info(f"{settings.app_name} shut down")


def register_exception_handlers(app: FastAPI) -> None:
    """Render AppException subclasses as ``{"detail": ...}``."""

    @app.exception_handler(GatewayError)
    async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
        logger.warning(
            f"Gateway {exc.gateway} failed on {request.method} {request.url.path}: "
            f"{exc.reason} (retryable={exc.retryable})"
        )
        headers = dict(exc.headers or {})
        if exc.retryable:
            headers["Retry-After"] = GATEWAY_RETRY_AFTER
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "retryable": exc.retryable},
            headers=headers,
        )

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        content: dict = {"detail": exc.detail}
        errors = getattr(exc, "errors", None)
        if errors:
            content["errors"] = errors
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


def register_middleware(app: FastAPI) -> None:
    # First added runs last: security headers wrap everything, gzip sits innermost.
    app.add_middleware(SecurityHeadersMiddleware)

    if settings.environment != "development":
        app.add_middleware(
            RateLimitMiddleware,
            requests_per_minute=settings.rate_limit_per_minute,
            money_requests_per_minute=settings.rate_limit_money_per_minute,
        )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="ConsultPay - consultation payments, earnings and payouts API",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    register_exception_handlers(app)
    register_middleware(app)
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check() -> dict:
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "currency": settings.currency,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    return app


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "consultpay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
