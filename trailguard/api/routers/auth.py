from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status

from trailguard.api.deps import CurrentActor, get_auth_service
from trailguard.api.errors import handle_service_error
from trailguard.domain.errors import ServiceError
from trailguard.domain.models import (
    BootstrapAdminRequest,
    LoginRequest,
    RefreshRequest,
    TokenResponse,
    UserCreate,
    UserRead,
)
from trailguard.services.auth_service import AuthService, TokenPair

router = APIRouter()

Service = Annotated[AuthService, Depends(get_auth_service)]


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
    )


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, service: Service) -> TokenResponse:
    try:
        return _token_response(service.login(payload.email, payload.password))
    except ServiceError as exc:
        handle_service_error(exc)


@router.post("/refresh", response_model=TokenResponse)
def refresh(payload: RefreshRequest, service: Service) -> TokenResponse:
    try:
        return _token_response(service.refresh(payload.refresh_token))
    except ServiceError as exc:
        handle_service_error(exc)


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
    except ServiceError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, actor: CurrentActor, service: Service) -> UserRead:
    try:
        user = service.create_user(actor, payload)
    except ServiceError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)


@router.get("/me", response_model=UserRead)
def me(actor: CurrentActor, service: Service) -> UserRead:
    try:
        user = service.get_user(actor, actor.user_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)


@router.get("/users/{user_id}", response_model=UserRead)
def get_user(user_id: str, actor: CurrentActor, service: Service) -> UserRead:
    try:
        user = service.get_user(actor, user_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)


@router.post("/users/{user_id}/deactivate", response_model=UserRead)
def deactivate_user(user_id: str, actor: CurrentActor, service: Service) -> UserRead:
    try:
        user = service.deactivate_user(actor, user_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return UserRead.model_validate(user)
