"""Pydantic v2 request/response schemas for subscription endpoints."""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from coinvault.models.subscription import SubscriptionStatus

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class SubscriptionCreate(BaseModel):
    """Start a subscription for the caller (or, for admins, another user).

    Either ``plan_id`` or ``stripe_price_id`` must resolve to a Stripe price.
    """

    user_id: str | None = None
    plan: str | None = Field(None, max_length=100)
    plan_id: str | None = None
    stripe_price_id: str | None = None
    trial_period_days: int | None = Field(None, ge=0)
    metadata: dict[str, Any] | None = None


class SubscriptionUpdate(BaseModel):
    """Partial update. Fields explicitly sent as ``null`` clear the column.

    ``status``, ``plan`` and ``plan_id`` only apply to local-only
    subscriptions; Stripe-backed ones take them from Stripe.
    """

    plan: str | None = Field(None, max_length=100)
    plan_id: str | None = None
    stripe_price_id: str | None = None
    status: SubscriptionStatus | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    pause_reason: str | None = Field(None, max_length=500)
    cancel_reason: str | None = Field(None, max_length=500)
    stripe_invoice_url: str | None = None
    metadata: dict[str, Any] | None = None


class SubscriptionPause(BaseModel):
    reason: str | None = Field(None, max_length=500)


class SubscriptionResume(BaseModel):
    plan: str | None = Field(None, max_length=100)
    stripe_invoice_url: str | None = None


class SubscriptionCancel(BaseModel):
    reason: str | None = Field(None, max_length=500)
    stripe_invoice_url: str | None = None


class SubscriptionQuery(BaseModel):
    """Filters, sorting and pagination for the admin listing."""

    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
    sort_by: str = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    status: SubscriptionStatus | None = None
    plan: str | None = None
    plan_id: str | None = None
    user_id: str | None = None
    stripe_subscription_id: str | None = None
    started_from: datetime | None = None
    started_to: datetime | None = None


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    plan: str | None = None
    plan_id: uuid.UUID | None = None
    stripe_subscription_id: str | None = None
    stripe_customer_id: str | None = None
    status: str
    started_at: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    ended_at: datetime | None = None
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    stripe_invoice_url: str | None = None
    pause_reason: str | None = None
    cancel_reason: str | None = None
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata")
    )
    last_event_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SubscriptionListResponse(BaseModel):
    """Paginated list of subscriptions."""

    items: list[SubscriptionResponse]
    total: int
    page: int
    limit: int
    total_pages: int
