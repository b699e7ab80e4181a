"""User mirror service — keeps a local row for every identity we bill."""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.auth.identity import VerifiedIdentity
from coinvault.models.user import User

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    return await db.get(User, user_id)


async def upsert_user_from_identity(db: AsyncSession, identity: VerifiedIdentity) -> User:
    """Create or refresh the local mirror of a verified identity."""
    user = await db.get(User, identity.id)
    if user is None:
        user = User(id=identity.id, email=identity.email, name=identity.name, role=identity.role)
        db.add(user)
        await db.flush()
        logger.info("Mirrored new identity %s (%s)", identity.id, identity.email)
        return user

    changed = False
    for field in ("email", "name", "role"):
        value = getattr(identity, field)
        if value is not None and getattr(user, field) != value:
            setattr(user, field, value)
            changed = True
    if changed:
        await db.flush()
    return user


async def ensure_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    """Return the user row, creating a bare one for identities not seen yet."""
    user = await db.get(User, user_id)
    if user is None:
        user = User(id=user_id)
        db.add(user)
        await db.flush()
        logger.info("Created placeholder user row %s", user_id)
    return user
