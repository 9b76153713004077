"""Security utilities: JWT access tokens and the operator dependency for admin routes."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any
import logging

import jwt
from fastapi import Depends, HTTPException, Request, status
from jwt.exceptions import PyJWTError

from app.core.config import settings

logger = logging.getLogger(__name__)


class TokenData:
    """Decoded token data.

    Attributes:
        user_id: Subject of the token.
        email: The operator's email address, when present.
        role: The operator's role, lower-cased.
    """

    def __init__(self, user_id: str, role: str, email: str = ""):
        self.user_id = user_id
        self.role = role
        self.email = email


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({
        "exp": expire,
        "iat": now,
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"require": ["exp"]},
        )
    except PyJWTError as e:
        logger.debug(f"JWT decode error: {e}")
        return None


async def get_current_operator(request: Request) -> TokenData:
    """Require a bearer token whose role is one of the configured operator roles."""
    payload = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        if token:
            payload = decode_access_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    role = str(payload.get("role") or "").lower()
    if user_id is None or not role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    if role not in settings.operator_roles_set:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator role required",
        )
    return TokenData(user_id=str(user_id), role=role, email=payload.get("email", ""))


RequireOperator = Annotated[TokenData, Depends(get_current_operator)]
