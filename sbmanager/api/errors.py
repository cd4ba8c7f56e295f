# sbmanager/api/errors.py

import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sbmanager.core.errors import (
    AlreadyRunningError,
    ConfigurationError,
    EntityNotFoundError,
    KernelError,
    ManagerError,
    SubscriptionError,
)

logger = logging.getLogger(__name__)


def status_code_for(exc: ManagerError) -> int:
    if isinstance(exc, EntityNotFoundError):
        return 404
    if isinstance(exc, AlreadyRunningError):
        return 409
    if isinstance(exc, ConfigurationError):
        return 400
    if isinstance(exc, (SubscriptionError, KernelError)):
        return exc.status_code
    # ProcessError, BuildError and anything else
    return 500


async def manager_error_handler(request: Request, exc: ManagerError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def io_error_handler(request: Request, exc: OSError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} I/O failure: {exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ManagerError, manager_error_handler)
    app.add_exception_handler(OSError, io_error_handler)
