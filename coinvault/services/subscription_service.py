"""Subscription service — lifecycle operations on user subscriptions.

Stripe-backed subscriptions push every change to Stripe first and then
reconcile the local row from Stripe's answer; local-only subscriptions are
mutated directly. Callers pass the requester and ``is_admin`` explicitly.
"""

import logging
import math
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.auth.identity import VerifiedIdentity
from coinvault.billing import stripe_client
from coinvault.billing.customers import ensure_customer
from coinvault.billing.plans import get_plan, get_plan_by_stripe_price
from coinvault.exceptions import (
    AuthorizationError,
    BusinessRuleError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from coinvault.models.subscription import (
    ACTIVE_STATUSES,
    ExternalBacking,
    Subscription,
    SubscriptionStatus,
)
from coinvault.schemas.subscription import (
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionPause,
    SubscriptionQuery,
    SubscriptionResume,
    SubscriptionUpdate,
)
from coinvault.services.subscription_sync import (
    get_first_item,
    merge_metadata,
    sync_from_stripe,
)
from coinvault.services.user_service import ensure_user
from coinvault.validators import parse_uuid, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

# A user may not start a new subscription while holding one of these
_BLOCKING_STATUSES = ACTIVE_STATUSES | {SubscriptionStatus.PAUSED.value}
_DELETABLE_STATUSES = {SubscriptionStatus.CANCELED.value, SubscriptionStatus.EXPIRED.value}

_SORTABLE_COLUMNS = {
    "created_at": Subscription.created_at,
    "updated_at": Subscription.updated_at,
    "started_at": Subscription.started_at,
    "current_period_end": Subscription.current_period_end,
    "ended_at": Subscription.ended_at,
    "status": Subscription.status,
    "plan": Subscription.plan,
}


@dataclass(frozen=True)
class PriceResolution:
    price_id: str | None
    plan_id: uuid.UUID | None
    plan_name: str | None


async def resolve_price(
    db: AsyncSession,
    plan_id: str | None = None,
    stripe_price_id: str | None = None,
    plan: str | None = None,
) -> PriceResolution:
    """Turn a plan reference into the Stripe price to bill.

    ``plan_id`` wins and must exist; a bare ``stripe_price_id`` is used as-is
    with a best-effort catalog lookup for the display name.
    """
    if plan_id:
        record = await get_plan(db, plan_id)
        return PriceResolution(record.stripe_price_id, record.id, record.name)

    if stripe_price_id:
        record = await get_plan_by_stripe_price(db, stripe_price_id)
        return PriceResolution(
            stripe_price_id,
            record.id if record else None,
            record.name if record else plan,
        )

    return PriceResolution(None, None, plan)


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def _ensure_access(subscription: Subscription, requester_id: uuid.UUID, is_admin: bool) -> None:
    if is_admin:
        return
    if subscription.user_id != requester_id:
        raise AuthorizationError("You are not allowed to access this subscription")


async def _ensure_can_start_new(db: AsyncSession, user_id: uuid.UUID) -> None:
    result = await db.execute(
        select(Subscription.id)
        .where(Subscription.user_id == user_id, Subscription.status.in_(_BLOCKING_STATUSES))
        .limit(1)
    )
    if result.first() is not None:
        raise BusinessRuleError("An active subscription already exists for this user")


async def _get_by_id(db: AsyncSession, subscription_id: str | uuid.UUID) -> Subscription:
    parsed = parse_uuid(subscription_id, "subscription identifier")
    subscription = await db.get(Subscription, parsed)
    if subscription is None:
        raise NotFoundError(f'Subscription with id "{parsed}" not found')
    return subscription


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


async def create_subscription(
    db: AsyncSession,
    requester: VerifiedIdentity,
    body: SubscriptionCreate,
    is_admin: bool,
) -> Subscription:
    """Create a Stripe subscription for the target user and materialize it locally."""
    target_id = parse_uuid(body.user_id or requester.id, "user identifier")
    is_self = target_id == requester.id

    if not is_admin and not is_self:
        raise AuthorizationError("You are not allowed to create subscriptions for other users")

    await _ensure_can_start_new(db, target_id)

    resolution = await resolve_price(db, body.plan_id, body.stripe_price_id, body.plan)
    if not resolution.price_id:
        raise ValidationError("A valid plan_id or stripe_price_id is required to create a subscription")

    if not is_self:
        await ensure_user(db, target_id)
    customer = await ensure_customer(
        db,
        target_id,
        email=requester.email if is_self else None,
        name=requester.name if is_self else None,
        metadata=body.metadata,
    )

    stripe_sub = await stripe_client.create_subscription(
        customer_id=customer.stripe_customer_id,
        price_id=resolution.price_id,
        metadata={
            "user_id": str(target_id),
            "plan_id": str(resolution.plan_id) if resolution.plan_id else None,
            "plan_name": resolution.plan_name or body.plan,
            **(body.metadata or {}),
        },
        trial_period_days=body.trial_period_days,
    )

    subscription = await sync_from_stripe(db, stripe_sub, body.metadata)
    if subscription is None:
        raise InternalError("Failed to persist subscription after Stripe creation")

    logger.info("Created subscription %s for user %s (%s)", subscription.id, target_id, stripe_sub.id)
    return subscription


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def list_my_subscriptions(db: AsyncSession, user_id: uuid.UUID) -> list[Subscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id).order_by(Subscription.created_at.desc())
    )
    return list(result.scalars().all())


async def get_my_active_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Most recent subscription of the user that holds the active slot, if any."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status.in_(ACTIVE_STATUSES))
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def list_user_subscriptions(db: AsyncSession, user_id: str | uuid.UUID) -> list[Subscription]:
    parsed = parse_uuid(user_id, "user identifier")
    return await list_my_subscriptions(db, parsed)


async def list_subscriptions(db: AsyncSession, query: SubscriptionQuery) -> dict:
    """Filtered, sorted, paginated listing (admin only at the HTTP layer)."""
    sort_column = _SORTABLE_COLUMNS.get(query.sort_by)
    if sort_column is None:
        raise ValidationError(f"Cannot sort by {query.sort_by!r}")

    conditions = []
    if query.status is not None:
        conditions.append(Subscription.status == query.status.value)
    if query.plan:
        conditions.append(Subscription.plan.ilike(f"%{query.plan}%"))
    if query.plan_id:
        conditions.append(Subscription.plan_id == parse_uuid(query.plan_id, "plan identifier"))
    if query.user_id:
        conditions.append(Subscription.user_id == parse_uuid(query.user_id, "user identifier"))
    if query.stripe_subscription_id:
        conditions.append(Subscription.stripe_subscription_id == query.stripe_subscription_id)
    if query.started_from is not None:
        conditions.append(Subscription.started_at >= to_naive_utc(query.started_from))
    if query.started_to is not None:
        conditions.append(Subscription.started_at <= to_naive_utc(query.started_to))

    total_result = await db.execute(select(func.count()).select_from(Subscription).where(*conditions))
    total = total_result.scalar_one()

    order = sort_column.asc() if query.sort_order == "asc" else sort_column.desc()
    result = await db.execute(
        select(Subscription)
        .where(*conditions)
        .order_by(order)
        .offset((query.page - 1) * query.limit)
        .limit(query.limit)
    )

    return {
        "items": list(result.scalars().all()),
        "total": total,
        "page": query.page,
        "limit": query.limit,
        "total_pages": math.ceil(total / query.limit),
    }


async def get_subscription(
    db: AsyncSession, subscription_id: str, requester_id: uuid.UUID, is_admin: bool
) -> Subscription:
    subscription = await _get_by_id(db, subscription_id)
    _ensure_access(subscription, requester_id, is_admin)
    return subscription


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def update_subscription(
    db: AsyncSession,
    subscription_id: str,
    requester_id: uuid.UUID,
    body: SubscriptionUpdate,
    is_admin: bool,
) -> Subscription:
    """Apply a partial update.

    For Stripe-backed subscriptions a plan/price change becomes a line-item
    swap in Stripe and metadata is merged into Stripe's; status and plan come
    back through reconciliation. Local-only subscriptions take status, plan
    and plan_id directly. Dates, reasons and the invoice URL are always set
    locally; fields explicitly sent as ``null`` are cleared.
    """
    subscription = await _get_by_id(db, subscription_id)
    _ensure_access(subscription, requester_id, is_admin)
    sent = body.model_fields_set
    backing = subscription.backing

    if isinstance(backing, ExternalBacking):
        current = await stripe_client.get_subscription(backing.subscription_id)
        resolution = await resolve_price(db, body.plan_id, body.stripe_price_id, body.plan)

        params: dict = {}
        item = get_first_item(current)
        current_price_id = stripe_client.object_id(getattr(item, "price", None)) if item is not None else None
        if resolution.price_id and item is not None and resolution.price_id != current_price_id:
            params["items"] = [{"id": item.id, "price": resolution.price_id}]
        if body.metadata:
            params["metadata"] = {
                **stripe_client.to_plain_dict(getattr(current, "metadata", None)),
                **stripe_client.to_stripe_metadata(body.metadata),
            }

        if params:
            current = await stripe_client.update_subscription(backing.subscription_id, params)
        await sync_from_stripe(db, current, body.metadata)
    else:
        if body.status is not None:
            subscription.status = body.status.value
        if body.plan is not None:
            subscription.plan = body.plan
        if body.plan_id:
            plan = await get_plan(db, body.plan_id)
            subscription.plan_id = plan.id
        if body.metadata:
            subscription.metadata_ = merge_metadata(subscription.metadata_, body.metadata)

    if body.started_at is not None:
        subscription.started_at = to_naive_utc(body.started_at)
    if "ended_at" in sent:
        subscription.ended_at = to_naive_utc(body.ended_at)
    if "pause_reason" in sent:
        subscription.pause_reason = body.pause_reason
    if "cancel_reason" in sent:
        subscription.cancel_reason = body.cancel_reason
    if "stripe_invoice_url" in sent:
        subscription.stripe_invoice_url = body.stripe_invoice_url

    subscription.last_event_at = utcnow()
    await db.flush()
    return subscription


async def pause_subscription(
    db: AsyncSession,
    subscription_id: str,
    requester_id: uuid.UUID,
    body: SubscriptionPause,
    is_admin: bool,
) -> Subscription:
    """Pause collection in Stripe, or mark a local-only subscription paused."""
    subscription = await _get_by_id(db, subscription_id)
    _ensure_access(subscription, requester_id, is_admin)

    if subscription.status not in ACTIVE_STATUSES:
        raise BusinessRuleError("Only active subscriptions can be paused")

    backing = subscription.backing
    if isinstance(backing, ExternalBacking):
        params: dict = {"pause_collection": {"behavior": "mark_uncollectible"}}
        if body.reason:
            params["metadata"] = {"pause_reason": body.reason}
        updated = await stripe_client.update_subscription(backing.subscription_id, params)
        await sync_from_stripe(db, updated, {"pause_reason": body.reason})
    else:
        subscription.status = SubscriptionStatus.PAUSED.value
        subscription.ended_at = utcnow()

    subscription.pause_reason = body.reason
    subscription.last_event_at = utcnow()
    await db.flush()
    logger.info("Paused subscription %s", subscription.id)
    return subscription


async def resume_subscription(
    db: AsyncSession,
    subscription_id: str,
    requester_id: uuid.UUID,
    body: SubscriptionResume,
    is_admin: bool,
) -> Subscription:
    subscription = await _get_by_id(db, subscription_id)
    _ensure_access(subscription, requester_id, is_admin)

    if subscription.status != SubscriptionStatus.PAUSED.value:
        raise BusinessRuleError("Only paused subscriptions can be resumed")

    backing = subscription.backing
    if isinstance(backing, ExternalBacking):
        # An empty string unsets pause_collection in the Stripe API
        updated = await stripe_client.update_subscription(
            backing.subscription_id, {"pause_collection": ""}
        )
        await sync_from_stripe(db, updated)
    else:
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.ended_at = None
        if subscription.started_at is None:
            subscription.started_at = utcnow()
        if body.plan:
            subscription.plan = body.plan

    subscription.pause_reason = None
    if body.stripe_invoice_url:
        subscription.stripe_invoice_url = body.stripe_invoice_url
    subscription.last_event_at = utcnow()
    await db.flush()
    logger.info("Resumed subscription %s", subscription.id)
    return subscription


async def cancel_subscription(
    db: AsyncSession,
    subscription_id: str,
    requester_id: uuid.UUID,
    body: SubscriptionCancel,
    is_admin: bool,
) -> Subscription:
    """Cancel immediately in Stripe (no proration, no invoice), or locally."""
    subscription = await _get_by_id(db, subscription_id)
    _ensure_access(subscription, requester_id, is_admin)

    if subscription.status == SubscriptionStatus.CANCELED.value:
        raise BusinessRuleError("Subscription is already canceled")

    backing = subscription.backing
    if isinstance(backing, ExternalBacking):
        canceled = await stripe_client.cancel_subscription(backing.subscription_id, reason=body.reason)
        await sync_from_stripe(db, canceled, {"cancel_reason": body.reason})
    else:
        now = utcnow()
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.ended_at = now
        subscription.canceled_at = now

    subscription.cancel_reason = body.reason
    if body.stripe_invoice_url:
        subscription.stripe_invoice_url = body.stripe_invoice_url
    subscription.last_event_at = utcnow()
    await db.flush()
    logger.info("Canceled subscription %s", subscription.id)
    return subscription


async def delete_subscription(
    db: AsyncSession,
    subscription_id: str,
    requester_id: uuid.UUID,
    is_admin: bool,
) -> None:
    """Hard-delete the local row, canceling a live Stripe subscription first.

    Non-admins may only delete canceled or expired subscriptions. The Stripe
    subscription object itself is kept (canceled) for Stripe's records.
    """
    subscription = await _get_by_id(db, subscription_id)
    _ensure_access(subscription, requester_id, is_admin)

    if not is_admin and subscription.status not in _DELETABLE_STATUSES:
        raise BusinessRuleError("Only canceled or expired subscriptions can be deleted")

    if subscription.is_external and subscription.status != SubscriptionStatus.CANCELED.value:
        await cancel_subscription(
            db,
            subscription_id,
            requester_id,
            SubscriptionCancel(reason="Deleted via API"),
            is_admin,
        )

    await db.delete(subscription)
    await db.flush()
    logger.info("Deleted subscription %s", subscription.id)
