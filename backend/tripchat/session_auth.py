"""JWT-backed session identity helpers.

Identity only decides which chat threads a browser may see; it is not an
account system.
"""
from __future__ import annotations

import time
import uuid
from typing import Any

import jwt
from fastapi import Request, Response

from tripchat.config import settings

SESSION_COOKIE_NAME = "tripchat_session"


def _ttl_seconds() -> int:
    return max(1, settings.session_jwt_ttl_hours) * 3600


def create_session_token(user_id: str) -> str:
    now = int(time.time())
    payload: dict[str, Any] = {"sub": user_id, "iat": now, "exp": now + _ttl_seconds()}
    return jwt.encode(payload, settings.session_jwt_secret, algorithm=settings.session_jwt_algorithm)


def decode_session_token(token: str) -> str | None:
    """Return the user id carried by ``token``, or None if it is invalid."""
    try:
        payload = jwt.decode(
            token,
            settings.session_jwt_secret,
            algorithms=[settings.session_jwt_algorithm],
        )
    except jwt.PyJWTError:
        return None
    sub = payload.get("sub")
    return sub if isinstance(sub, str) and sub else None


def resolve_user(request: Request) -> tuple[str, str | None]:
    """Return ``(user_id, new_token)``; ``new_token`` is set for a first visit."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    user_id = decode_session_token(token) if token else None
    if user_id:
        return user_id, None

    user_id = f"guest:{uuid.uuid4()}"
    return user_id, create_session_token(user_id)


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        max_age=_ttl_seconds(),
        httponly=True,
        secure=False,  # Local dev over HTTP
        samesite="lax",
        path="/",
    )
