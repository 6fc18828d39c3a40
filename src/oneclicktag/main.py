"""FastAPI entry point for the OneClickTag server."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request
from starlette.responses import JSONResponse

from oneclicktag import __version__
from oneclicktag.api.batches import admin_router
from oneclicktag.api.batches import router as batches_router
from oneclicktag.api.rest import router as rest_router
from oneclicktag.api.ws import router as ws_router
from oneclicktag.batches.maintenance import QueueMaintenance
from oneclicktag.config import get_settings
from oneclicktag.errors import OneClickTagError
from oneclicktag.events.broadcaster import get_broadcaster, init_redis_broadcaster
from oneclicktag.storage.database import close_db, init_db
from oneclicktag.tenancy.middleware import TenantMiddleware

logger = logging.getLogger("oneclicktag")

# Global reference to the maintenance loop for the admin endpoint
_queue_maintenance: QueueMaintenance | None = None


def get_queue_maintenance() -> QueueMaintenance:
    """Get the maintenance loop, creating an unstarted one if needed."""
    global _queue_maintenance
    if _queue_maintenance is None:
        settings = get_settings()
        _queue_maintenance = QueueMaintenance(
            interval_seconds=settings.queue.maintenance_interval_seconds,
            stuck_job_seconds=settings.queue.stuck_job_seconds,
        )
    return _queue_maintenance


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    global _queue_maintenance

    settings = get_settings()
    await init_db(settings.database.url)

    redis_client = None
    redis_broadcaster = None
    if settings.redis.url:
        import redis.asyncio as aioredis

        redis_client = aioredis.from_url(settings.redis.url, decode_responses=True)
        redis_broadcaster = init_redis_broadcaster(redis_client)
        await redis_broadcaster.start()

    broadcaster = get_broadcaster()
    _queue_maintenance = QueueMaintenance(
        interval_seconds=settings.queue.maintenance_interval_seconds,
        stuck_job_seconds=settings.queue.stuck_job_seconds,
        broadcaster=broadcaster,
    )
    if settings.queue.maintenance_enabled:
        await _queue_maintenance.start()

    logger.info(
        "OneClickTag server started on %s:%d (broadcast=%s)",
        settings.server.host,
        settings.server.port,
        "redis" if redis_broadcaster else "local",
    )
    yield

    # Shutdown in reverse order
    await _queue_maintenance.stop()
    _queue_maintenance = None
    if redis_broadcaster:
        await redis_broadcaster.stop()
    if redis_client is not None:
        await redis_client.aclose()
    await close_db()
    logger.info("OneClickTag server stopped")


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(OneClickTagError)
    async def domain_exception_handler(request: Request, exc: OneClickTagError) -> JSONResponse:
        """Map domain errors to their status and ``{error, message}`` body."""
        if exc.status_code >= 500:
            logger.error("%s on %s %s", exc.error, request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Return field-level details for malformed requests."""
        logger.warning("Validation error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=422,
            content={
                "error": "validation_error",
                "message": "Request validation failed",
                "details": _validation_details(exc),
            },
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        """Log the database error and return a generic message."""
        logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "database_error", "message": "A database error occurred"},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled exceptions without exposing details to the client."""
        logger.error(
            "Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc
        )
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "An unexpected error occurred"},
        )


def _validation_details(exc: RequestValidationError) -> list[dict[str, object]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="OneClickTag",
        description="Tenant-scoped conversion tracking batches",
        version=__version__,
        lifespan=lifespan,
    )

    origins = list(settings.cors_origins) or ["http://localhost:3000", "http://127.0.0.1:3000"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Tenant context middleware
    app.add_middleware(TenantMiddleware)

    _register_exception_handlers(app)

    # API routes
    app.include_router(rest_router, prefix="/api/v1")
    app.include_router(batches_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")
    app.include_router(ws_router, prefix="/api/v1")

    return app


app = create_app()


def main() -> None:
    """Run the OneClickTag server."""
    logging.basicConfig(
        level=logging.DEBUG if get_settings().debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = get_settings()
    uvicorn.run(
        "oneclicktag.main:app",
        host=settings.server.host,
        port=settings.server.port,
        workers=settings.server.workers,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
