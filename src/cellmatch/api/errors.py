"""Translation of domain errors into HTTP errors."""

from __future__ import annotations

from fastapi import HTTPException, status

from ..errors import (
    CellMatchError,
    InvalidCoordinate,
    InvalidTransition,
    RequestAlreadyTaken,
    RequestNotFound,
    StaleHeartbeat,
    StorageUnavailable,
)

_STATUS_BY_ERROR: tuple[tuple[type[CellMatchError], int], ...] = (
    (InvalidCoordinate, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (RequestNotFound, status.HTTP_404_NOT_FOUND),
    (RequestAlreadyTaken, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (StaleHeartbeat, status.HTTP_409_CONFLICT),
    (StorageUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(exc: CellMatchError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(
                status_code=status_code,
                detail={"error": type(exc).__name__, "message": str(exc)},
            )
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": type(exc).__name__, "message": str(exc)},
    )
