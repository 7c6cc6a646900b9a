"""FastAPI application factory for the netplane daemon."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from netplane import __version__
from netplane.api.routes_connections import router as connections_router
from netplane.api.routes_errors import router as errors_router
from netplane.api.routes_operations import router as operations_router
from netplane.api.routes_profiles import router as profiles_router
from netplane.api.routes_system import router as system_router
from netplane.api.ws import router as ws_router
from netplane.exceptions import (
    AlreadyInProgress,
    BackendError,
    BackendUnavailable,
    ConnectionNotFound,
    DuplicateProfileName,
    InvalidConfiguration,
    NetplaneError,
    OperationNotFound,
    PermissionDenied,
    ProfileApplyError,
    ProfileDisabled,
    ProfileInvalid,
    ProfileNotFound,
)

logger = logging.getLogger(__name__)

# Checked in order; the first matching class decides the status code
_STATUS_CODES: list[tuple[type[NetplaneError], int]] = [
    (ConnectionNotFound, status.HTTP_404_NOT_FOUND),
    (OperationNotFound, status.HTTP_404_NOT_FOUND),
    (ProfileNotFound, status.HTTP_404_NOT_FOUND),
    (AlreadyInProgress, status.HTTP_409_CONFLICT),
    (DuplicateProfileName, status.HTTP_409_CONFLICT),
    (PermissionDenied, status.HTTP_403_FORBIDDEN),
    (BackendUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (InvalidConfiguration, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ProfileInvalid, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ProfileDisabled, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ProfileApplyError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (BackendError, status.HTTP_502_BAD_GATEWAY),
]


def status_code_for(exc: NetplaneError) -> int:
    for exc_type, code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _netplane_error_handler(request: Request, exc: NetplaneError) -> JSONResponse:
    code = status_code_for(exc)
    body: dict = {"detail": str(exc), "error": type(exc).__name__}
    problems = getattr(exc, "problems", None)
    if problems:
        body["problems"] = problems
    if code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content=body)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Dependencies in ``netplane.api.deps`` must be overridden by the caller
    before the app serves requests.
    """
    start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.start_time = start_time
        yield

    app = FastAPI(
        title="netplane",
        version=__version__,
        lifespan=lifespan,
    )

    # Store start_time directly for access outside lifespan
    app.state.start_time = start_time

    app.add_exception_handler(NetplaneError, _netplane_error_handler)

    app.include_router(system_router)
    app.include_router(connections_router)
    app.include_router(operations_router)
    app.include_router(errors_router)
    app.include_router(profiles_router)
    app.include_router(ws_router)

    return app
