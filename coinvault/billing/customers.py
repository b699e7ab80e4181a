"""Stripe customer mapping — one Stripe customer per user, created lazily."""

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.billing import stripe_client
from coinvault.exceptions import NotFoundError
from coinvault.models.customer import StripeCustomer
from coinvault.services.user_service import ensure_user, get_user

logger = logging.getLogger(__name__)


async def get_customer_by_user(db: AsyncSession, user_id: uuid.UUID) -> StripeCustomer | None:
    result = await db.execute(select(StripeCustomer).where(StripeCustomer.user_id == user_id))
    return result.scalar_one_or_none()


async def get_customer_by_stripe_id(db: AsyncSession, stripe_customer_id: str) -> StripeCustomer | None:
    """Look up the mapping by Stripe customer ID (used by reconciliation)."""
    result = await db.execute(
        select(StripeCustomer).where(StripeCustomer.stripe_customer_id == stripe_customer_id)
    )
    return result.scalar_one_or_none()


async def ensure_customer(
    db: AsyncSession,
    user_id: uuid.UUID,
    email: str | None = None,
    name: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> StripeCustomer:
    """Return the user's Stripe customer mapping, creating the customer if missing.

    An existing mapping whose email differs from the known one is refreshed on
    both sides.
    """
    if email is None:
        user = await get_user(db, user_id)
        email = user.email if user else None

    record = await get_customer_by_user(db, user_id)
    if record is not None:
        if email and record.email != email:
            await stripe_client.update_customer(record.stripe_customer_id, {"email": email})
            record.email = email
            await db.flush()
            logger.info("Refreshed email of Stripe customer %s", record.stripe_customer_id)
        return record

    customer = await stripe_client.create_customer(
        email=email,
        name=name,
        user_id=str(user_id),
        metadata=metadata,
    )
    customer_metadata = stripe_client.to_plain_dict(getattr(customer, "metadata", None))
    record = StripeCustomer(
        user_id=user_id,
        stripe_customer_id=customer.id,
        email=getattr(customer, "email", None) or email,
        metadata_=customer_metadata or dict(metadata or {}),
    )
    db.add(record)
    await db.flush()
    logger.info("Linked Stripe customer %s to user %s", customer.id, user_id)
    return record


async def update_customer_metadata(
    db: AsyncSession, user_id: uuid.UUID, metadata: dict[str, Any]
) -> StripeCustomer:
    record = await get_customer_by_user(db, user_id)
    if record is None:
        raise NotFoundError("Stripe customer not found for user")

    await stripe_client.update_customer(
        record.stripe_customer_id, {"metadata": stripe_client.to_stripe_metadata(metadata)}
    )
    record.metadata_ = dict(metadata)
    await db.flush()
    return record


async def delete_customer(
    db: AsyncSession, user_id: uuid.UUID, delete_from_stripe: bool = False
) -> None:
    """Drop the mapping; optionally delete the Stripe customer too. No-op if absent."""
    record = await get_customer_by_user(db, user_id)
    if record is None:
        return
    if delete_from_stripe:
        await stripe_client.delete_customer(record.stripe_customer_id)
    await db.delete(record)
    await db.flush()
    logger.info("Removed Stripe customer mapping for user %s", user_id)


async def delete_customer_by_stripe_id(
    db: AsyncSession, stripe_customer_id: str, delete_from_stripe: bool = False
) -> None:
    record = await get_customer_by_stripe_id(db, stripe_customer_id)
    if record is None:
        return
    if delete_from_stripe:
        await stripe_client.delete_customer(stripe_customer_id)
    await db.delete(record)
    await db.flush()
    logger.info("Removed Stripe customer mapping %s", stripe_customer_id)


async def sync_customer_from_stripe(db: AsyncSession, customer: Any) -> StripeCustomer | None:
    """Mirror ``customer.created`` / ``customer.updated`` into the mapping table.

    Unknown customers are only inserted when they carry a ``user_id`` metadata hint.
    """
    metadata = stripe_client.to_plain_dict(getattr(customer, "metadata", None))
    email = getattr(customer, "email", None)

    record = await get_customer_by_stripe_id(db, customer.id)
    if record is not None:
        record.email = email
        record.metadata_ = metadata
        await db.flush()
        return record

    hint = metadata.get("user_id")
    if not hint:
        logger.debug("Stripe customer %s has no user_id hint, skipping", customer.id)
        return None
    try:
        user_id = uuid.UUID(str(hint))
    except ValueError:
        logger.warning("Stripe customer %s carries malformed user_id %r", customer.id, hint)
        return None

    existing = await get_customer_by_user(db, user_id)
    if existing is not None:
        logger.warning(
            "User %s already mapped to Stripe customer %s, ignoring %s",
            user_id,
            existing.stripe_customer_id,
            customer.id,
        )
        return existing

    await ensure_user(db, user_id)
    record = StripeCustomer(
        user_id=user_id,
        stripe_customer_id=customer.id,
        email=email,
        metadata_=metadata,
    )
    db.add(record)
    await db.flush()
    logger.info("Inserted Stripe customer mapping %s for user %s", customer.id, user_id)
    return record
