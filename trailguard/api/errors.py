from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException, status

from trailguard.domain.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PolicyError,
    ServiceError,
    ValidationError,
)

_STATUS_BY_ERROR: tuple[tuple[type[ServiceError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (PolicyError, status.HTTP_409_CONFLICT),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
)


def handle_service_error(exc: ServiceError) -> NoReturn:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            reason = getattr(exc, "reason", None)
            detail: str | dict[str, str] = str(exc)
            if reason is not None:
                detail = {"message": str(exc), "reason": str(reason)}
            raise HTTPException(status_code=status_code, detail=detail) from exc
    raise exc
