"""
JWT verification for session identity and signing of the OAuth state parameter.

Session JWTs are issued by the external auth layer (HS256, shared JWT_SECRET);
this service only decodes them. The OAuth state is a short-lived JWT of our own
that carries the user id through the Google redirect, so the callback can trust
it without a session cookie.
"""
from datetime import datetime, timedelta, UTC

from jose import jwt

from subtracker.config import JWT_ALGORITHM, OAUTH_STATE_MAX_AGE, require_setting

STATE_PURPOSE = "mailbox_connect"


def create_jwt(user_id: str, max_age: int, purpose: str | None = None) -> str:
    """Build a JWT for the given user id; exp = now + max_age seconds."""
    payload = {
        "sub": user_id,
        "exp": datetime.now(UTC) + timedelta(seconds=max_age),
    }
    if purpose:
        payload["purpose"] = purpose
    return jwt.encode(payload, require_setting("JWT_SECRET"), algorithm=JWT_ALGORITHM)


def decode_jwt(token: str) -> dict:
    """Decode and verify JWT; raises JWTError if invalid or expired."""
    return jwt.decode(token, require_setting("JWT_SECRET"), algorithms=[JWT_ALGORITHM])


def create_state_token(user_id: str) -> str:
    return create_jwt(user_id, OAUTH_STATE_MAX_AGE, purpose=STATE_PURPOSE)


def decode_state_token(token: str) -> str | None:
    """Return the user id carried by an OAuth state token, or None if not a state token."""
    payload = decode_jwt(token)
    if payload.get("purpose") != STATE_PURPOSE:
        return None
    return payload.get("sub")
