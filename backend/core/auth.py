"""
Caller identity for quota routes.

Authentication happens upstream (gateway / session layer); the resolved user
arrives as ``request.state.user_id`` or, for service-to-service calls and
tests, the X-User-Id header.
"""
from typing import Optional

from fastapi import Header, HTTPException, Request


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Authenticated user ID"),
) -> str:
    """
    Resolve the calling user.

    Priority:
    1. request.state.user_id (set by upstream auth middleware)
    2. X-User-Id header

    Raises:
        HTTPException 401: no identity available
    """
    user_id = getattr(request.state, "user_id", None) or x_user_id
    if not user_id:
        raise HTTPException(
            status_code=401,
            detail="Missing X-User-Id header",
        )
    return user_id
