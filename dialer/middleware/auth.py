"""Authentication dependencies for FastAPI."""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dialer.config import settings
from dialer.models.database import Workspace
from dialer.services.auth import decode_token
from dialer.services.database import get_store

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


async def get_token_payload(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    payload = decode_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_workspace(
    workspace_slug: str,
    payload: dict = Depends(get_token_payload),
) -> Workspace:
    """FastAPI dependency: resolve the workspace in the path for the caller.

    The token's ``workspaces`` claim lists the slugs it may access.
    """
    allowed = payload.get("workspaces") or []
    if workspace_slug not in allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No access to this workspace",
        )

    workspace = get_store().get_workspace_by_slug(workspace_slug)
    if workspace is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Workspace not found",
        )
    return workspace


async def verify_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_security),
) -> None:
    """FastAPI dependency: require ``Bearer <cron_secret>`` when one is configured."""
    if not settings.cron_secret:
        return
    token = credentials.credentials if credentials else ""
    if not hmac.compare_digest(token, settings.cron_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
