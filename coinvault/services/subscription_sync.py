"""Reconciliation of local subscription rows from Stripe subscription snapshots.

Both the lifecycle service (after every Stripe call) and the webhook dispatcher
feed snapshots through ``sync_from_stripe``. Applying the same snapshot twice
leaves the row unchanged apart from ``last_event_at``.
"""

import logging
import uuid
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.billing import stripe_client
from coinvault.billing.customers import get_customer_by_stripe_id
from coinvault.billing.plans import get_plan_by_stripe_price
from coinvault.exceptions import IntegrationError
from coinvault.models.subscription import Subscription, SubscriptionStatus
from coinvault.services.user_service import ensure_user
from coinvault.validators import ts_to_naive, utcnow

logger = logging.getLogger(__name__)

_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
    "unpaid": SubscriptionStatus.UNPAID,
}


def get_first_item(stripe_sub: Any):
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() on Stripe objects.
    """
    try:
        sub_items = stripe_sub["items"]
    except (KeyError, AttributeError):
        return None
    data = getattr(sub_items, "data", None) if sub_items else None
    if data:
        return data[0]
    return None


def _period_ts(stripe_sub: Any, field: str) -> int | None:
    """Read a period boundary from the subscription, or from its first item.

    Newer Stripe API versions only carry ``current_period_*`` on items.
    """
    value = getattr(stripe_sub, field, None)
    if value:
        return value
    item = get_first_item(stripe_sub)
    return getattr(item, field, None) if item else None


def map_stripe_status(stripe_sub: Any) -> SubscriptionStatus:
    """Translate a Stripe status; an active pause_collection always means paused."""
    if getattr(stripe_sub, "pause_collection", None):
        return SubscriptionStatus.PAUSED
    return _STATUS_MAP.get(getattr(stripe_sub, "status", None), SubscriptionStatus.EXPIRED)


def merge_metadata(
    existing: dict[str, Any] | None,
    custom: dict[str, Any] | None = None,
    stripe_metadata: Any = None,
) -> dict[str, Any]:
    """Merge caller metadata under ``custom``; ``stripe`` is replaced verbatim."""
    metadata = dict(existing) if isinstance(existing, dict) else {}

    custom = {key: value for key, value in (custom or {}).items() if value is not None}
    if custom:
        previous = metadata.get("custom")
        metadata["custom"] = {**(previous if isinstance(previous, dict) else {}), **custom}

    if stripe_metadata is not None:
        metadata["stripe"] = stripe_client.to_plain_dict(stripe_metadata)
    else:
        metadata.setdefault("stripe", {})
    return metadata


async def extract_invoice_url(stripe_sub: Any) -> str | None:
    """Hosted URL (or PDF) of the latest invoice, fetching it when not expanded."""
    invoice = getattr(stripe_sub, "latest_invoice", None)
    if not invoice:
        return None

    if isinstance(invoice, str):
        try:
            invoice = await stripe_client.get_invoice(invoice)
        except IntegrationError:
            logger.warning("Could not fetch latest invoice of subscription %s", stripe_sub.id)
            return None

    return getattr(invoice, "hosted_invoice_url", None) or getattr(invoice, "invoice_pdf", None)


async def get_subscription_by_stripe_id(
    db: AsyncSession, stripe_subscription_id: str
) -> Subscription | None:
    """Look up subscription by Stripe subscription ID."""
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def _resolve_user_id(
    db: AsyncSession,
    existing: Subscription | None,
    customer_id: str,
    stripe_metadata: dict[str, Any],
) -> uuid.UUID | None:
    if existing is not None:
        return existing.user_id

    mapping = await get_customer_by_stripe_id(db, customer_id)
    if mapping is not None:
        return mapping.user_id

    hint = stripe_metadata.get("user_id")
    if not hint:
        return None
    try:
        user_id = uuid.UUID(str(hint))
    except ValueError:
        logger.warning("Ignoring malformed user_id hint %r on customer %s", hint, customer_id)
        return None
    await ensure_user(db, user_id)
    return user_id


async def sync_from_stripe(
    db: AsyncSession,
    stripe_sub: stripe.Subscription,
    custom_metadata: dict[str, Any] | None = None,
) -> Subscription | None:
    """Upsert the local row for a Stripe subscription snapshot.

    Args:
        db: Session; the caller owns the commit.
        stripe_sub: Subscription object from the API or a webhook payload.
        custom_metadata: Extra caller context stored under ``metadata.custom``.

    Returns:
        The synced row, or ``None`` when the snapshot cannot be attributed to
        a user (the event is logged and dropped).
    """
    customer_id = stripe_client.object_id(getattr(stripe_sub, "customer", None))
    if not customer_id:
        logger.warning("Stripe subscription %s has no customer, skipping", stripe_sub.id)
        return None

    existing = await get_subscription_by_stripe_id(db, stripe_sub.id)
    stripe_metadata = stripe_client.to_plain_dict(getattr(stripe_sub, "metadata", None))

    user_id = await _resolve_user_id(db, existing, customer_id, stripe_metadata)
    if user_id is None:
        logger.warning(
            "Dropping orphaned Stripe subscription %s: customer %s maps to no user",
            stripe_sub.id,
            customer_id,
        )
        return None

    item = get_first_item(stripe_sub)
    price = getattr(item, "price", None) if item else None
    price_id = stripe_client.object_id(price)
    plan = await get_plan_by_stripe_price(db, price_id) if price_id else None

    if plan is not None:
        plan_name = plan.name
    elif existing is not None and existing.plan:
        plan_name = existing.plan
    else:
        plan_name = getattr(price, "nickname", None) if price is not None and not isinstance(price, str) else None

    invoice_url = await extract_invoice_url(stripe_sub)
    pause_collection = getattr(stripe_sub, "pause_collection", None)

    canceled_at = ts_to_naive(getattr(stripe_sub, "canceled_at", None))
    ended_at = ts_to_naive(getattr(stripe_sub, "ended_at", None))
    if getattr(stripe_sub, "status", None) == "canceled" and canceled_at is None:
        canceled_at = ended_at

    values: dict[str, Any] = {
        "user_id": user_id,
        "plan": plan_name,
        "plan_id": plan.id if plan is not None else (existing.plan_id if existing else None),
        "stripe_subscription_id": stripe_sub.id,
        "stripe_customer_id": customer_id,
        "status": map_stripe_status(stripe_sub).value,
        "started_at": ts_to_naive(getattr(stripe_sub, "start_date", None)),
        "current_period_start": ts_to_naive(_period_ts(stripe_sub, "current_period_start")),
        "current_period_end": ts_to_naive(_period_ts(stripe_sub, "current_period_end")),
        "ended_at": ended_at,
        "cancel_at": ts_to_naive(getattr(stripe_sub, "cancel_at", None)),
        "canceled_at": canceled_at,
        "stripe_invoice_url": invoice_url or (existing.stripe_invoice_url if existing else None),
        "pause_reason": getattr(pause_collection, "behavior", None) if pause_collection else None,
        "metadata_": merge_metadata(
            existing.metadata_ if existing else None, custom_metadata, stripe_metadata
        ),
        "last_event_at": utcnow(),
    }

    if existing is not None:
        _apply(existing, values)
        await db.flush()
        logger.info("Synced subscription %s from %s (status=%s)", existing.id, stripe_sub.id, values["status"])
        return existing

    subscription = Subscription(**values)
    try:
        async with db.begin_nested():
            db.add(subscription)
    except IntegrityError:
        # Another delivery inserted the same Stripe subscription first
        existing = await get_subscription_by_stripe_id(db, stripe_sub.id)
        if existing is None:
            raise
        values["metadata_"] = merge_metadata(existing.metadata_, custom_metadata, stripe_metadata)
        _apply(existing, values)
        await db.flush()
        logger.info("Concurrent insert of %s resolved as update of %s", stripe_sub.id, existing.id)
        return existing

    logger.info(
        "Materialized subscription %s for user %s from %s (status=%s)",
        subscription.id,
        user_id,
        stripe_sub.id,
        values["status"],
    )
    return subscription


def _apply(subscription: Subscription, values: dict[str, Any]) -> None:
    for key, value in values.items():
        setattr(subscription, key, value)


async def handle_checkout_session(
    db: AsyncSession, session: stripe.checkout.Session
) -> Subscription | None:
    """Reconcile the subscription created by a hosted checkout, if any."""
    if getattr(session, "mode", None) != "subscription":
        logger.debug("Checkout session %s is not a subscription checkout, skipping", session.id)
        return None

    subscription_id = stripe_client.object_id(getattr(session, "subscription", None))
    if not subscription_id:
        logger.info("Checkout session %s has no subscription yet, skipping", session.id)
        return None

    stripe_sub = await stripe_client.get_subscription(subscription_id)
    metadata = stripe_client.to_plain_dict(getattr(session, "metadata", None))
    return await sync_from_stripe(db, stripe_sub, metadata)
