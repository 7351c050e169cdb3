"""Map sync engine errors to HTTP responses."""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from notesync.api.models import ErrorResponse
from notesync.core.errors import (
    AlreadyInProgress,
    DecryptionFailed,
    EncryptionRequired,
    FatalInput,
    ImportFailed,
    NotAuthenticated,
    RemoteChanged,
    RemoteUnavailable,
    SyncError,
    describe_error,
)

logger = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    AlreadyInProgress.code: status.HTTP_409_CONFLICT,
    EncryptionRequired.code: status.HTTP_423_LOCKED,
    NotAuthenticated.code: status.HTTP_401_UNAUTHORIZED,
    RemoteUnavailable.code: status.HTTP_502_BAD_GATEWAY,
    RemoteChanged.code: status.HTTP_502_BAD_GATEWAY,
    DecryptionFailed.code: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FatalInput.code: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ImportFailed.code: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for_code(code: str | None) -> int:
    """HTTP status for a sync error code."""
    if code is None:
        return status.HTTP_200_OK
    return _STATUS_BY_CODE.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_body(code: str, message: str, detail: str | None = None) -> dict:
    return ErrorResponse(error=code, message=message, detail=detail).model_dump()


async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    """Render a SyncError raised inside a route."""
    logger.warning(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=status_for_code(exc.code),
        content=error_body(exc.code, describe_error(exc), exc.message),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("InternalError", "Internal server error", str(exc)),
    )
