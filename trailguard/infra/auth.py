from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from datetime import datetime, timedelta
from enum import StrEnum
from functools import lru_cache
from typing import Any

import jwt

from trailguard.domain.models import now_utc

JWT_ACCESS_SECRET = os.getenv("JWT_ACCESS_SECRET", "dev-access-secret-change-me-please-0001")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "dev-refresh-secret-change-me-please-0001")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ACCESS_TTL_MIN = int(os.getenv("JWT_ACCESS_TTL_MIN", "15"))
JWT_REFRESH_TTL_MIN = int(os.getenv("JWT_REFRESH_TTL_MIN", str(7 * 24 * 60)))

PASSWORD_HASH_SCHEME = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = int(os.getenv("PASSWORD_HASH_ITERATIONS", "260000"))


class TokenType(StrEnum):
    ACCESS = "access"
    REFRESH = "refresh"


def _secret_for(token_type: TokenType) -> str:
    if token_type == TokenType.REFRESH:
        return JWT_REFRESH_SECRET
    return JWT_ACCESS_SECRET


def _ttl_for(token_type: TokenType) -> timedelta:
    if token_type == TokenType.REFRESH:
        return timedelta(minutes=JWT_REFRESH_TTL_MIN)
    return timedelta(minutes=JWT_ACCESS_TTL_MIN)


def access_ttl_seconds() -> int:
    return int(_ttl_for(TokenType.ACCESS).total_seconds())


def create_token(
    *,
    user_id: str,
    email: str,
    role: str,
    token_type: TokenType,
    now: datetime | None = None,
) -> str:
    issued = now or now_utc()
    payload: dict[str, Any] = {
        "sub": user_id,
        "email": email,
        "role": role,
        "typ": str(token_type),
        "iat": int(issued.timestamp()),
        "nbf": int(issued.timestamp()),
        "exp": int((issued + _ttl_for(token_type)).timestamp()),
    }
    return jwt.encode(payload, _secret_for(token_type), algorithm=JWT_ALGORITHM)


def decode_token(token: str, token_type: TokenType) -> dict[str, Any]:
    """Verify signature, algorithm and time claims; raise on anything else.

    Only the configured HMAC algorithm is accepted, so tokens declaring
    ``alg=none`` or an asymmetric algorithm fail before their claims are read.
    """
    decoded = jwt.decode(
        token,
        _secret_for(token_type),
        algorithms=[JWT_ALGORITHM],
        options={"require": ["sub", "exp", "iat", "nbf"]},
    )
    if not isinstance(decoded, dict):
        raise ValueError("Invalid token payload")
    if decoded.get("typ") != str(token_type):
        raise ValueError("Unexpected token type")
    return decoded


def hash_password(raw_password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        raw_password.encode(),
        bytes.fromhex(salt),
        PASSWORD_HASH_ITERATIONS,
    )
    return f"{PASSWORD_HASH_SCHEME}${PASSWORD_HASH_ITERATIONS}${salt}${digest.hex()}"


def verify_password(raw_password: str, stored_hash: str) -> bool:
    try:
        scheme, iterations, salt, expected = stored_hash.split("$")
        rounds = int(iterations)
        salt_bytes = bytes.fromhex(salt)
    except ValueError:
        return False
    if scheme != PASSWORD_HASH_SCHEME:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", raw_password.encode(), salt_bytes, rounds)
    return hmac.compare_digest(digest.hex(), expected)


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", b"", bytes(16), rounds)
    return f"{PASSWORD_HASH_SCHEME}${rounds}${bytes(16).hex()}${digest.hex()}"


def dummy_password_hash() -> str:
    """Stand-in hash at the current cost, checked when no account matches."""
    return _dummy_hash(PASSWORD_HASH_ITERATIONS)
