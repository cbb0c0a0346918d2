from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import jwt
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from trailguard.domain.errors import AuthError, AuthReason, ConflictError, NotFoundError
from trailguard.domain.models import Agency, BootstrapAdminRequest, User, UserCreate, now_utc
from trailguard.domain.permissions import CAP_USER_READ, CAP_USER_WRITE, Actor, Role, ensure_capability
from trailguard.infra import auth
from trailguard.infra.db import get_engine
from trailguard.infra.events import event_bus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


class AuthService:
    """Token authority and account lifecycle.

    Access and refresh tokens are signed with separate secrets. Refresh always
    reloads the user, so deactivating an account cuts off token renewal even
    while an old refresh token is still within its lifetime.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or now_utc

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def issue(self, user: User) -> TokenPair:
        if not user.is_active:
            raise AuthError(AuthReason.ACCOUNT_INACTIVE, "user account is inactive")
        now = self._clock()
        common: dict[str, Any] = {
            "user_id": user.id,
            "email": user.email,
            "role": str(user.role),
            "now": now,
        }
        return TokenPair(
            access_token=auth.create_token(token_type=auth.TokenType.ACCESS, **common),
            refresh_token=auth.create_token(token_type=auth.TokenType.REFRESH, **common),
            expires_in=auth.access_ttl_seconds(),
        )

    def login(self, email: str, password: str) -> TokenPair:
        with self._session() as session:
            user = session.exec(select(User).where(User.email == email)).first()
        if user is None:
            # unknown accounts pay the same hashing cost as known ones
            auth.verify_password(password, auth.dummy_password_hash())
            logger.info("login rejected for %s", email)
            raise AuthError(AuthReason.INVALID_CREDENTIALS, "invalid credentials")
        if not auth.verify_password(password, user.password_hash):
            logger.info("login rejected for %s", email)
            raise AuthError(AuthReason.INVALID_CREDENTIALS, "invalid credentials")
        if not user.is_active:
            raise AuthError(AuthReason.ACCOUNT_INACTIVE, "user account is inactive")
        return self.issue(user)

    def _decode(self, token: str, token_type: auth.TokenType) -> dict[str, Any]:
        try:
            claims = auth.decode_token(token, token_type)
        except (jwt.PyJWTError, ValueError) as exc:
            raise AuthError(AuthReason.INVALID_TOKEN, f"invalid {token_type} token") from exc
        return claims

    def verify_access(self, token: str) -> Actor:
        claims = self._decode(token, auth.TokenType.ACCESS)
        try:
            role = Role(claims.get("role"))
        except ValueError as exc:
            raise AuthError(AuthReason.INVALID_TOKEN, "invalid access token") from exc
        return Actor(user_id=str(claims["sub"]), role=role)

    def refresh(self, refresh_token: str) -> TokenPair:
        claims = self._decode(refresh_token, auth.TokenType.REFRESH)
        with self._session() as session:
            user = session.get(User, str(claims["sub"]))
        if user is None:
            raise AuthError(AuthReason.INVALID_TOKEN, "user not found")
        if not user.is_active:
            logger.info("refresh rejected for inactive user %s", user.id)
            raise AuthError(AuthReason.ACCOUNT_INACTIVE, "user account is inactive")
        return self.issue(user)

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            existing = session.exec(select(func.count()).select_from(User)).one()
            if existing:
                raise ConflictError("users already initialized")
            user = User(
                email=payload.email,
                password_hash=auth.hash_password(payload.password),
                full_name=payload.full_name,
                role=Role.ADMIN,
                is_active=True,
                created_at=self._clock(),
                updated_at=self._clock(),
            )
            session.add(user)
            session.commit()
            session.refresh(user)
        logger.info("bootstrap admin %s created", user.id)
        return user

    def create_user(self, actor: Actor, payload: UserCreate) -> User:
        ensure_capability(actor, CAP_USER_WRITE)
        with self._session() as session:
            if payload.agency_id is not None and session.get(Agency, payload.agency_id) is None:
                raise NotFoundError("agency not found")
            if session.exec(select(User).where(User.email == payload.email)).first() is not None:
                raise ConflictError("email already registered")
            user = User(
                email=payload.email,
                password_hash=auth.hash_password(payload.password),
                full_name=payload.full_name,
                role=payload.role,
                agency_id=payload.agency_id,
                is_active=True,
                created_at=self._clock(),
                updated_at=self._clock(),
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("email already registered") from exc
            session.refresh(user)

        event_bus.publish_dict("user.created", {"user_id": user.id, "role": user.role}, actor_id=actor.user_id)
        return user

    def get_user(self, actor: Actor, user_id: str) -> User:
        if actor.user_id != user_id:
            ensure_capability(actor, CAP_USER_READ)
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def deactivate_user(self, actor: Actor, user_id: str) -> User:
        ensure_capability(actor, CAP_USER_WRITE)
        with self._session() as session:
            user = session.exec(select(User).where(User.id == user_id).with_for_update()).first()
            if user is None:
                raise NotFoundError("user not found")
            user.is_active = False
            user.updated_at = self._clock()
            session.add(user)
            session.commit()
            session.refresh(user)

        logger.info("user %s deactivated by %s", user.id, actor.user_id)
        event_bus.publish_dict("user.deactivated", {"user_id": user.id}, actor_id=actor.user_id)
        return user
