"""Petrel FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from petrel import __version__
from petrel.api.dependencies import get_launcher
from petrel.config import get_settings
from petrel.db import close_db, get_async_session, init_db
from petrel.errors import PetrelError, ValidationError
from petrel.logging import bind_context, clear_context, configure_logging
from petrel.services.console import get_console_tailer
from petrel.services.http import lifespan_http_client
from petrel.services.supervisor.lifecycle import init_supervisor, shutdown_supervisor
from petrel.services.tokens import TokenService

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    configure_logging(json_format=settings.logging.json_format, level=settings.logging.level)

    # Startup
    logger.info("petrel.startup", version=__version__, launcher=settings.launcher.type)
    await init_db()

    async with get_async_session() as session:
        await TokenService.auto_provision(session, settings)

    async with lifespan_http_client(app, timeout=settings.update.probe_request_timeout_seconds):
        await init_supervisor()

        yield

        # Shutdown
        logger.info("petrel.shutdown")
        await shutdown_supervisor()
        await get_console_tailer().shutdown()
        await get_launcher().close()

    await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Petrel",
        description="Orchestration core for unikernel workloads",
        version=__version__,
        lifespan=lifespan,
    )

    # Request ID middleware
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add request ID to all requests and to their log lines."""
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        bind_context(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            clear_context()
        response.headers["X-Request-Id"] = request_id
        return response

    # Error handler
    @app.exception_handler(PetrelError)
    async def petrel_error_handler(request: Request, exc: PetrelError):
        """Handle Petrel errors with consistent format."""
        request_id = getattr(request.state, "request_id", None)
        logger.info(
            "request.error",
            code=exc.code,
            status=exc.status_code,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        """Render FastAPI request validation failures as Petrel validation errors."""
        errors = jsonable_encoder(exc.errors())
        details: dict = {"reason": "request_validation", "errors": errors}
        if errors:
            loc = [str(part) for part in errors[0].get("loc", ())]
            details["field"] = ".".join(loc[1:] if len(loc) > 1 else loc)
        return await petrel_error_handler(
            request, ValidationError("Request validation failed", details=details)
        )

    # Health check
    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "version": __version__}

    # Import and register API routers
    from petrel.api.v1 import router as v1_router

    app.include_router(v1_router, prefix="/v1")

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "petrel.main:app",
        host=settings.server.host,
        port=settings.server.port,
    )


# Create default app instance
app = create_app()


if __name__ == "__main__":
    run()
