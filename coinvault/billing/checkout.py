"""Hosted Stripe Checkout for subscription purchases."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.auth.identity import VerifiedIdentity
from coinvault.billing import stripe_client
from coinvault.billing.customers import ensure_customer
from coinvault.config import settings

logger = logging.getLogger(__name__)


async def create_checkout_session(
    db: AsyncSession,
    identity: VerifiedIdentity,
    price_id: str,
    success_url: str | None = None,
    cancel_url: str | None = None,
) -> dict[str, str | None]:
    """Create a subscription-mode Checkout session for the caller.

    The resulting subscription reaches the local store through the
    ``checkout.session.*`` webhooks.
    """
    customer = await ensure_customer(db, identity.id, email=identity.email, name=identity.name)

    session = await stripe_client.create_checkout_session(
        customer_id=customer.stripe_customer_id,
        price_id=price_id,
        success_url=success_url
        or f"{settings.frontend_url}/billing?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or f"{settings.frontend_url}/pricing",
        metadata={"user_id": str(identity.id)},
    )
    logger.info("Checkout session %s created for user %s", session.id, identity.id)
    return {"url": session.url, "session_id": session.id}
