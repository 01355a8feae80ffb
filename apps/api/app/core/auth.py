"""Request identity supplied by the upstream auth provider."""
from __future__ import annotations

from fastapi import Header, HTTPException, status

USER_ID_HEADER = "X-User-Id"


async def get_current_user_id(x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER)) -> str:
    """Return the authenticated user id forwarded by the auth gateway."""

    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_user_id.strip()
