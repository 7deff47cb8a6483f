"""FastAPI application factory."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from trafficshift.api.routes_aliases import router as aliases_router
from trafficshift.api.routes_health import router as health_router
from trafficshift.api.routes_shifts import router as shifts_router
from trafficshift.api.routes_versions import router as versions_router
from trafficshift.core.config import get_settings
from trafficshift.core.errors import (
    ConflictError,
    DuplicateArtifactError,
    NotFoundError,
    TrafficShiftError,
    ValidationError,
)
from trafficshift.core.logging import get_logger, setup_logging
from trafficshift.db.session import init_db
from trafficshift.scheduler.controller import ShiftController

logger = get_logger(__name__)

_STATUS_FOR_ERROR: tuple[tuple[type[TrafficShiftError], int], ...] = (
    (NotFoundError, 404),
    (DuplicateArtifactError, 409),
    (ConflictError, 409),
    (ValidationError, 422),
)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


async def _domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = 500
    for error_type, code in _STATUS_FOR_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code == 500:
        logger.error("unhandled_domain_error", error=repr(exc), path=request.url.path)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def create_app(controller: ShiftController | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    When *controller* is omitted one is built from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings = get_settings()
        setup_logging(settings.log_level)
        init_db()
        if getattr(app.state, "controller", None) is None:
            app.state.controller = ShiftController.build(settings)
        logger.info("app_started", version=settings.app_version)
        yield
        logger.info("app_shutdown")

    app = FastAPI(
        title="Traffic Shift Controller",
        version=get_settings().app_version,
        lifespan=lifespan,
    )
    app.state.controller = controller

    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(TrafficShiftError, _domain_error_handler)

    app.include_router(health_router)
    app.include_router(versions_router)
    app.include_router(aliases_router)
    app.include_router(shifts_router)

    return app
