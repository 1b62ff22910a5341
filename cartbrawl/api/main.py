"""
Main FastAPI application for the CartBrawl backend.
Configures the API server with routes, middleware, and error handling.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

import structlog

from cartbrawl.api.dependencies import status_for
from cartbrawl.api.middleware import add_middleware
from cartbrawl.api.routes import competitions, jobs, shopify, users
from cartbrawl.api.schemas.common import APIResponse, HealthCheckResponse, create_error_response
from cartbrawl.core.config import settings
from cartbrawl.core.database import close_database, get_async_session, init_database
from cartbrawl.core.exceptions import CartBrawlException
from cartbrawl.core.logging import setup_logging
from cartbrawl.services.shopify_client import close_shopify_client
from cartbrawl.services.whop_client import close_whop_client


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting CartBrawl API server", environment=settings.environment)
    await init_database()

    yield

    logger.info("Shutting down CartBrawl API server")
    try:
        await close_whop_client()
        await close_shopify_client()
    finally:
        await close_database()


async def cartbrawl_exception_handler(request: Request, exc: CartBrawlException) -> JSONResponse:
    """Map domain exceptions that escape a route to an error response."""
    status_code = status_for(exc.code)
    log = logger.error if status_code >= 500 else logger.info
    log("Request rejected", path=request.url.path, error_code=exc.code, error=exc.message)

    body = create_error_response(exc.message, exc.code, exc.details or None)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    setup_logging()

    app = FastAPI(
        title="CartBrawl API",
        description="""
        Shopify revenue competitions on Whop.

        Creators escrow a prize, store owners connect their Shopify store,
        and whoever books the most paid-order revenue inside the window wins.

        ## Authentication

        Send the Whop user token as either:
        ```
        Authorization: Bearer <whop-user-token>
        x-whop-user-token: <whop-user-token>
        ```
        """,
        version=settings.app_version,
        lifespan=lifespan,
    )

    add_middleware(app)
    app.add_exception_handler(CartBrawlException, cartbrawl_exception_handler)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check API server health and database connectivity"
    )
    async def health_check():
        try:
            async with get_async_session() as db:
                await db.execute(text("SELECT 1"))

            return HealthCheckResponse(version=settings.app_version)
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "unhealthy",
                    "services": {
                        "database": "unhealthy",
                        "api": "healthy"
                    },
                    "error": str(e)
                }
            )

    @app.get(
        "/",
        response_model=APIResponse,
        tags=["System"],
        summary="API Information"
    )
    async def root():
        return APIResponse(message=f"CartBrawl API v{settings.app_version} - Ready to serve!")

    app.include_router(
        competitions.router,
        prefix=f"{settings.api_v1_prefix}/competitions",
        tags=["Competitions"]
    )

    app.include_router(
        users.router,
        prefix=f"{settings.api_v1_prefix}/user",
        tags=["User"]
    )

    app.include_router(
        shopify.router,
        prefix=f"{settings.api_v1_prefix}/shopify",
        tags=["Shopify"]
    )

    app.include_router(
        jobs.router,
        prefix=f"{settings.api_v1_prefix}/admin/background-jobs",
        tags=["Admin"]
    )

    logger.info("FastAPI application created successfully")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cartbrawl.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
