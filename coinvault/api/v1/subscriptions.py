"""Subscription API endpoints — lifecycle of user subscriptions."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.api.deps import get_current_identity, get_db, require_admin
from coinvault.auth.identity import VerifiedIdentity
from coinvault.models.subscription import Subscription, SubscriptionStatus
from coinvault.schemas.subscription import (
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionListResponse,
    SubscriptionPause,
    SubscriptionQuery,
    SubscriptionResponse,
    SubscriptionResume,
    SubscriptionUpdate,
)
from coinvault.services import subscription_service

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


@router.post(
    "",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a subscription",
)
async def create_subscription(
    body: SubscriptionCreate,
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> Subscription:
    """Create a Stripe-backed subscription for the caller.

    Admins may pass ``user_id`` to subscribe another user.
    """
    subscription = await subscription_service.create_subscription(db, identity, body, identity.is_admin)
    await db.refresh(subscription)
    return subscription


@router.get("/me", response_model=list[SubscriptionResponse], summary="List my subscriptions")
async def list_my_subscriptions(
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> list[Subscription]:
    return await subscription_service.list_my_subscriptions(db, identity.id)


@router.get(
    "/me/active",
    response_model=SubscriptionResponse | None,
    summary="Get my active subscription",
)
async def get_my_active_subscription(
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> Subscription | None:
    """Return the caller's subscription holding the active slot, or ``null``."""
    return await subscription_service.get_my_active_subscription(db, identity.id)


@router.get("", response_model=SubscriptionListResponse, summary="List all subscriptions")
async def list_subscriptions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    status_filter: SubscriptionStatus | None = Query(None, alias="status"),
    plan: str | None = Query(None, description="Case-insensitive substring of the plan name"),
    plan_id: str | None = Query(None),
    user_id: str | None = Query(None),
    stripe_subscription_id: str | None = Query(None),
    started_from: datetime | None = Query(None, description="Subscriptions with started_at >= this"),
    started_to: datetime | None = Query(None, description="Subscriptions with started_at <= this"),
    db: AsyncSession = Depends(get_db),
    _admin: VerifiedIdentity = Depends(require_admin),
) -> dict:
    """Filtered, paginated listing across all users (admin only)."""
    query = SubscriptionQuery(
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        status=status_filter,
        plan=plan,
        plan_id=plan_id,
        user_id=user_id,
        stripe_subscription_id=stripe_subscription_id,
        started_from=started_from,
        started_to=started_to,
    )
    return await subscription_service.list_subscriptions(db, query)


@router.get(
    "/user/{user_id}",
    response_model=list[SubscriptionResponse],
    summary="List a user's subscriptions",
)
async def list_user_subscriptions(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    _admin: VerifiedIdentity = Depends(require_admin),
) -> list[Subscription]:
    return await subscription_service.list_user_subscriptions(db, user_id)


@router.get("/{subscription_id}", response_model=SubscriptionResponse, summary="Get a subscription")
async def get_subscription(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> Subscription:
    return await subscription_service.get_subscription(
        db, subscription_id, identity.id, identity.is_admin
    )


@router.patch("/{subscription_id}", response_model=SubscriptionResponse, summary="Update a subscription")
async def update_subscription(
    subscription_id: str,
    body: SubscriptionUpdate,
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> Subscription:
    subscription = await subscription_service.update_subscription(
        db, subscription_id, identity.id, body, identity.is_admin
    )
    await db.refresh(subscription)
    return subscription


@router.post("/{subscription_id}/pause", response_model=SubscriptionResponse, summary="Pause a subscription")
async def pause_subscription(
    subscription_id: str,
    body: SubscriptionPause | None = None,
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> Subscription:
    subscription = await subscription_service.pause_subscription(
        db, subscription_id, identity.id, body or SubscriptionPause(), identity.is_admin
    )
    await db.refresh(subscription)
    return subscription


@router.post("/{subscription_id}/resume", response_model=SubscriptionResponse, summary="Resume a subscription")
async def resume_subscription(
    subscription_id: str,
    body: SubscriptionResume | None = None,
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> Subscription:
    subscription = await subscription_service.resume_subscription(
        db, subscription_id, identity.id, body or SubscriptionResume(), identity.is_admin
    )
    await db.refresh(subscription)
    return subscription


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse, summary="Cancel a subscription")
async def cancel_subscription(
    subscription_id: str,
    body: SubscriptionCancel | None = None,
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> Subscription:
    subscription = await subscription_service.cancel_subscription(
        db, subscription_id, identity.id, body or SubscriptionCancel(), identity.is_admin
    )
    await db.refresh(subscription)
    return subscription


@router.delete(
    "/{subscription_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Delete a subscription",
)
async def delete_subscription(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> Response:
    """Delete a subscription, canceling it in Stripe first if still live."""
    await subscription_service.delete_subscription(db, subscription_id, identity.id, identity.is_admin)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
