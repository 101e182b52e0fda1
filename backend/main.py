"""
AskMatch FastAPI Application
HTTP entry point: match search, interest listing and interest processing.
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.api import health, matches
from backend.core.config import settings
from backend.core.logging_config import configure_logging
from backend.core.sentry import capture_exception, init_sentry
from backend.database import close_sync_db

configure_logging()
logger = structlog.get_logger().bind(module="api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Enable error reporting on startup; release pooled connections on shutdown."""
    sentry_enabled = init_sentry()
    logger.info(
        "api_starting",
        environment=settings.environment,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
    )

    yield

    close_sync_db()
    logger.info("api_stopped")


app = FastAPI(
    title="AskMatch API",
    description=(
        "Ranks users for a searcher by how well their offers answer the "
        "searcher's asks, how well the searcher's offers answer theirs, and "
        "how closely their interests follow the searcher's topics. Each match "
        "lists the statements and topics behind its score."
    ),
    version=settings.app_version,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def error_body(status_code: int, message: str, **extra) -> dict:
    """Error payload shared by all handlers."""
    return {"error": True, "message": message, "status_code": status_code, **extra}


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.status_code, exc.detail),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Report unexpected failures and hide their details outside debug mode."""
    logger.error(
        "unhandled_request_error",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )
    event_id = capture_exception(exc, extra={"path": request.url.path, "method": request.method})

    message = str(exc) if settings.debug else "Internal server error"
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(500, message, error_id=event_id),
    )


app.include_router(health.router)
app.include_router(matches.router)


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {"name": settings.app_name, "version": settings.app_version}
