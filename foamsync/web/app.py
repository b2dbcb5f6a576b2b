"""FastAPI application for the hosted foamsync store."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.exc import DBAPIError
from starlette.middleware.base import BaseHTTPMiddleware

from foamsync import __version__
from foamsync.config import AppConfig, get_config
from foamsync.core.logging import configure_logging
from foamsync.db.connection import close_db, get_session_factory
from foamsync.errors import (
    ErrorKind,
    FoamSyncError,
    NotFoundError,
    classify_error,
)
from foamsync.realtime.broker import Broker, get_broker
from foamsync.store.service import StoreService
from foamsync.web.routes import health, realtime, rpc

logger = structlog.get_logger()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            logger.info(
                "request_completed",
                status_code=response.status_code,
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise


def error_status(exc: FoamSyncError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if exc.kind is ErrorKind.AUTHORIZATION:
        return 403
    if exc.kind is ErrorKind.TRANSIENT:
        return 503
    return 422


def create_app(
    store: StoreService | None = None,
    broker: Broker | None = None,
    config: AppConfig | None = None,
) -> FastAPI:
    """Build the API.

    Without an explicit store the lifespan wires one to the configured
    database and realtime backend.
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.store is None
        if owned:
            app.state.broker = get_broker(config.realtime)
            app.state.store = StoreService(
                get_session_factory(), app.state.broker, config.retry_queue
            )
        yield
        if owned:
            await app.state.broker.close()
            await close_db()

    app = FastAPI(
        title="foamsync",
        description="Sync and inventory reconciliation store",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.broker = broker or (store.broker if store is not None else None)
    app.state.store = store

    app.add_middleware(RequestLoggingMiddleware)
    Instrumentator().instrument(app).expose(app)

    @app.exception_handler(FoamSyncError)
    async def foamsync_error_handler(request: Request, exc: FoamSyncError):
        status_code = error_status(exc)
        if status_code >= 500:
            logger.warning("store_unavailable", error=str(exc))
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "kind": exc.kind.value},
        )

    @app.exception_handler(DBAPIError)
    async def database_error_handler(request: Request, exc: DBAPIError):
        kind = classify_error(exc)
        logger.error("database_error", error=str(exc), kind=kind.value)
        status_code = 503 if kind is ErrorKind.TRANSIENT else 500
        return JSONResponse(
            status_code=status_code,
            content={"detail": "Database error", "kind": kind.value},
        )

    app.include_router(health.router)
    app.include_router(rpc.router)
    app.include_router(realtime.router)
    return app


def build_app() -> FastAPI:
    """uvicorn factory: ``uvicorn foamsync.web.app:build_app --factory``."""
    configure_logging()
    return create_app()
