"""
Current-user dependency.

The auth layer owns login and issues a session JWT; this module only turns
that JWT (Bearer header or session cookie) into a user id for the routers.
OAuth state tokens are rejected here so they cannot be replayed as sessions.
"""
from fastapi import HTTPException, Request
from jose import JWTError

from subtracker.config import JWT_COOKIE_NAME
from subtracker.security import decode_jwt


def _session_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get(JWT_COOKIE_NAME)


def get_current_user_id(request: Request) -> str:
    """
    FastAPI dependency: read the session JWT and return its subject.
    Raises 401 if the token is missing, invalid or expired.
    """
    token = _session_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_jwt(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    user_id = payload.get("sub")
    if not user_id or payload.get("purpose"):
        raise HTTPException(status_code=401, detail="Invalid session")
    return user_id
