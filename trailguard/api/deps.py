from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from trailguard.domain.errors import AuthError
from trailguard.domain.permissions import Actor
from trailguard.services.auth_service import AuthService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


def get_auth_service() -> AuthService:
    return AuthService()


def get_current_actor(
    request: Request,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
    token: str = Depends(oauth2_scheme),
) -> Actor:
    try:
        actor = auth_service.verify_access(token)
    except AuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": str(exc), "reason": str(exc.reason)},
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    request.state.actor = actor
    return actor


CurrentActor = Annotated[Actor, Depends(get_current_actor)]


def pagination(limit: int = 20, offset: int = 0) -> tuple[int, int]:
    if limit < 1 or limit > 100:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="limit must be between 1 and 100")
    if offset < 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="offset must be >= 0")
    return limit, offset


Pagination = Annotated[tuple[int, int], Depends(pagination)]
