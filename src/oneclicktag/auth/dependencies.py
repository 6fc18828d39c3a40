"""FastAPI dependencies for authentication."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any

import jwt
from fastapi import Depends, Request

from oneclicktag.auth.jwt import bearer_token, decode_access_token
from oneclicktag.errors import AuthenticationError, ForbiddenError


async def get_current_user(request: Request) -> dict[str, Any]:
    """Extract and verify the bearer JWT.

    Returns the decoded token payload or raises 401. The signature is
    always checked here, whatever ``security.verify_token_signature`` says.
    """
    token = bearer_token(request.headers.get("authorization", ""))
    if not token:
        raise AuthenticationError("Not authenticated")
    try:
        return decode_access_token(token)
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid or expired token")


def require_permission(
    permission: str,
) -> Callable[..., Coroutine[Any, Any, dict[str, Any]]]:
    """Dependency factory that checks the token's permissions claim."""

    async def checker(user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
        if permission not in (user.get("permissions") or []):
            raise ForbiddenError("Insufficient permissions")
        return user

    return checker
