"""JWT token creation and decoding."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from oneclicktag.config import get_settings


def create_access_token(
    user_id: str,
    tenant_id: str,
    permissions: list[str] | None = None,
) -> str:
    """Create a signed JWT access token carrying tenant claims."""
    settings = get_settings()
    expires = datetime.now(UTC) + timedelta(hours=settings.security.token_expiry_hours)
    payload = {
        "sub": user_id,
        "tenantId": tenant_id,
        "permissions": permissions or [],
        "exp": expires,
        "iat": datetime.now(UTC),
    }
    return jwt.encode(payload, settings.security.secret_key, algorithm="HS256")


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a JWT token. Raises on invalid/expired."""
    settings = get_settings()
    return jwt.decode(token, settings.security.secret_key, algorithms=["HS256"])


def decode_claims(token: str) -> dict[str, Any]:
    """Decode a token for tenant resolution.

    Verifies the signature unless ``security.verify_token_signature`` is
    off, in which case the payload is read as-is. Raises
    ``jwt.InvalidTokenError`` when the token cannot be decoded.
    """
    if get_settings().security.verify_token_signature:
        return decode_access_token(token)
    return jwt.decode(token, options={"verify_signature": False})


def bearer_token(authorization: str) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` value."""
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]
