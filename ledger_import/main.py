"""Ledger Import Backend - FastAPI Application."""

import time
import traceback
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ledger_import import __version__
from ledger_import.config import settings
from ledger_import.database import init_db
from ledger_import.deps import DbSession, get_review_service
from ledger_import.logger import configure_logging, get_logger
from ledger_import.routers import duplicates, imports
from ledger_import.services.matching import load_matching_config

configure_logging()
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Load matching config on startup; let categorization tasks finish on shutdown."""
    await init_db()
    config = load_matching_config()
    logger.info(
        "Application started",
        environment=settings.environment,
        exact_threshold=config.exact_threshold,
        fuzzy_threshold=config.fuzzy_threshold,
        date_window_days=config.date_window_days,
    )
    yield
    service = get_review_service()
    await service.engine.drain_hooks()
    logger.info("Application stopped", open_sessions=len(service.store))


app = FastAPI(
    title="Ledger Import API",
    description="Import reconciliation and conflict resolution for a personal finance ledger",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Bind a request id to every log line of the request and echo it back."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("Request failed", duration_ms=round((time.perf_counter() - started) * 1000, 2))
        raise

    logger.info(
        "Request handled",
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return a JSON 500; details and trace only in debug."""
    body: dict[str, str | None] = {
        "detail": str(exc) if settings.debug else "Internal server error",
        "request_id": structlog.contextvars.get_contextvars().get("request_id"),
    }
    if settings.debug:
        body["trace"] = traceback.format_exc()
    return JSONResponse(status_code=500, content=body)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "X-User-Id", REQUEST_ID_HEADER],
)

app.include_router(imports.router)
app.include_router(duplicates.router)


@app.get("/health")
async def health_check(db: DbSession) -> JSONResponse:
    """200 when the database answers, 503 otherwise."""
    try:
        await db.execute(text("SELECT 1"))
        database_ok = True
    except SQLAlchemyError as exc:
        logger.error("Health check: database unreachable", error=str(exc), error_type=type(exc).__name__)
        database_ok = False

    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "healthy" if database_ok else "unhealthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "checks": {"database": database_ok},
            "version": __version__,
        },
    )
