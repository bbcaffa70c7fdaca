"""
Auth dependencies for protected FastAPI routes.
"""

from __future__ import annotations

from fastapi import Depends, Header, WebSocket

from core import errors

from . import security


def _extract_bearer_token(authorization: str | None) -> str:
    raw = (authorization or "").strip()
    if not raw:
        raise errors.Unauthorized("Missing Authorization header.")

    parts = raw.split(" ", 1)
    if len(parts) != 2:
        raise errors.Unauthorized("Invalid Authorization header format.")

    scheme, token = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer" or not token:
        raise errors.Unauthorized("Authorization must be: Bearer <token>.")
    return token


def _user_id(token: str) -> int:
    try:
        return security.user_id_from_token(token)
    except security.AuthSecurityError as exc:
        raise errors.Unauthorized(str(exc)) from exc


async def get_bearer_token(authorization: str | None = Header(default=None)) -> str:
    return _extract_bearer_token(authorization)


async def get_current_user_id(access_token: str = Depends(get_bearer_token)) -> int:
    return _user_id(access_token)


def websocket_user_id(websocket: WebSocket) -> int:
    """
    Browsers cannot set headers on WebSocket handshakes, so the token may also
    come as the `access_token` query parameter.
    """
    header = websocket.headers.get("authorization")
    if header:
        return _user_id(_extract_bearer_token(header))
    return _user_id(_extract_bearer_token(f"Bearer {websocket.query_params.get('access_token') or ''}"))
