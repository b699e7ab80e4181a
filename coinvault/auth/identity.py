"""Verified identity extracted from a Supabase access token."""

import uuid
from dataclasses import dataclass
from typing import Any

from coinvault.config import settings


@dataclass(frozen=True)
class VerifiedIdentity:
    """The caller as vouched for by the identity provider."""

    id: uuid.UUID
    email: str | None = None
    name: str | None = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return is_privileged_role(self.role)


def is_privileged_role(role: str | None) -> bool:
    if not role:
        return False
    return role.lower() in {r.lower() for r in settings.admin_roles}


def identity_from_claims(claims: dict[str, Any]) -> VerifiedIdentity:
    """Build an identity from decoded token claims.

    Role precedence follows Supabase conventions: ``app_metadata.role`` (set by
    admins) wins over ``user_metadata.role`` (user-editable), default ``user``.

    Raises:
        ValueError: If the ``sub`` claim is missing or not a UUID.
    """
    sub = claims.get("sub")
    if not sub:
        raise ValueError("Token has no subject")
    user_id = uuid.UUID(str(sub))

    app_metadata = claims.get("app_metadata") or {}
    user_metadata = claims.get("user_metadata") or {}
    role = app_metadata.get("role") or user_metadata.get("role") or "user"
    email = claims.get("email") or None
    name = user_metadata.get("full_name") or user_metadata.get("name") or email

    return VerifiedIdentity(id=user_id, email=email, name=name, role=str(role))
