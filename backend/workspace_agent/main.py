"""Workspace Agent backend: FastAPI application entry point."""

import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other package imports
# (structlog caches the processor chain on first use).
from workspace_agent.core.config import get_settings as _get_settings_early
from workspace_agent.core.logging import configure_structlog

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else _early_settings.log_level,
    json_logs=_early_settings.json_logs and not _early_settings.debug,
    max_value_chars=_early_settings.log_max_value_chars,
)

import structlog  # noqa: E402
from fastapi import FastAPI, HTTPException, Request  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from workspace_agent.api.routes import api_router  # noqa: E402
from workspace_agent.core.config import get_settings  # noqa: E402
from workspace_agent.core.container import build_container  # noqa: E402

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the container on startup (unless one was injected) and close it on shutdown."""
    app.state.shutting_down = False
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    container = getattr(app.state, "container", None)
    if container is None:
        settings.vm_root.mkdir(parents=True, exist_ok=True)
        container = build_container(settings)
        app.state.container = container
    container.start()
    logger.info("startup_complete", vm_root=str(container.settings.vm_root))

    yield

    app.state.shutting_down = True
    logger.info("shutdown_begin")
    await container.close()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Log HTTPExceptions with a debug_id and return a sanitized body."""
    debug_id = str(uuid.uuid4())
    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled errors with traceback; the client only gets a generic 500."""
    debug_id = str(uuid.uuid4())
    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Low-code workspace agent: tables, UI schema and logic built through tools",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "workspace_agent.main:app",
        host="0.0.0.0",
        port=8000,
        reload=_early_settings.debug,
    )
