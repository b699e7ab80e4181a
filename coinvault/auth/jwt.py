"""Supabase access-token verification (and minting, for local tooling and tests)."""

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt

from coinvault.config import settings


def decode_token(token: str) -> dict:
    """Decode and verify a Supabase access token.

    Args:
        token: Encoded JWT string from the ``Authorization: Bearer`` header.

    Returns:
        Decoded payload dictionary.

    Raises:
        jose.JWTError: If the token is invalid, expired, has the wrong audience,
            or is malformed.
    """
    return jwt.decode(
        token,
        settings.supabase_jwt_secret,
        algorithms=[settings.supabase_jwt_algorithm],
        audience=settings.supabase_jwt_audience,
    )


def create_access_token(
    user_id: str,
    email: str | None = None,
    role: str | None = None,
    name: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Mint a token shaped like a Supabase session token.

    Args:
        user_id: The user's UUID as a string (``sub`` claim).
        email: Optional ``email`` claim.
        role: Optional application role, stored under ``app_metadata.role``.
        name: Optional display name, stored under ``user_metadata.full_name``.
        expires_delta: Custom lifetime. Defaults to one hour.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": user_id,
        "aud": settings.supabase_jwt_audience,
        "role": "authenticated",
        "iat": now,
        "exp": now + (expires_delta or timedelta(hours=1)),
        "app_metadata": {"role": role} if role else {},
        "user_metadata": {"full_name": name} if name else {},
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.supabase_jwt_secret, algorithm=settings.supabase_jwt_algorithm)
