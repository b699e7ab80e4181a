"""FastAPI authentication dependencies for route protection."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.auth.identity import VerifiedIdentity, identity_from_claims
from coinvault.auth.jwt import decode_token
from coinvault.database import get_db
from coinvault.services.user_service import upsert_user_from_identity

# Missing headers are reported as 401 below rather than by HTTPBearer itself
_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> VerifiedIdentity:
    """Verify the Bearer token and return the caller's identity.

    The local user mirror is refreshed on every call so billing rows can
    reference it.

    Raises:
        HTTPException 401: If the header is missing or the token is invalid,
            expired, or has no usable subject.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = decode_token(credentials.credentials)
        identity = identity_from_claims(payload)
    except (JWTError, ValueError):
        raise credentials_exception from None

    await upsert_user_from_identity(db, identity)
    return identity


async def require_admin(
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> VerifiedIdentity:
    """Return the identity only if it holds one of the configured admin roles.

    Raises:
        HTTPException 403: If the caller is not an admin.
    """
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return identity
