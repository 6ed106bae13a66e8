"""Workspace access tokens (JWT)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from dialer.config import settings


def create_access_token(subject: str, workspaces: list[str], expires_minutes: int = 60) -> str:
    """Create a JWT granting access to the given workspace slugs."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "workspaces": workspaces,
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    """Decode and validate a JWT token. Returns payload or None."""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
