"""Pydantic v2 request/response schemas for billing endpoints."""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# --- Request schemas ---


class PlanCreate(BaseModel):
    """Create a plan: a Stripe product plus one recurring price."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=2000)
    amount: int = Field(..., ge=0, description="Price in minor currency units (e.g. cents)")
    currency: str = Field("usd", min_length=3, max_length=3)
    interval: Literal["day", "week", "month", "year"] = "month"
    interval_count: int = Field(1, ge=1)
    features: list[str] | None = None
    metadata: dict[str, Any] | None = None


class PlanUpdate(BaseModel):
    """Partial plan update; pricing changes create a new Stripe price."""

    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=2000)
    amount: int | None = Field(None, ge=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    interval: Literal["day", "week", "month", "year"] | None = None
    interval_count: int | None = Field(None, ge=1)
    features: list[str] | None = None
    is_active: bool | None = None
    metadata: dict[str, Any] | None = None


class CustomerCreate(BaseModel):
    """Link (or re-link) a Stripe customer; ``user_id`` is honoured for admins only."""

    user_id: str | None = None
    email: str | None = None
    name: str | None = Field(None, max_length=255)
    metadata: dict[str, Any] | None = None


class CustomerMetadataUpdate(BaseModel):
    metadata: dict[str, Any]


class CheckoutRequest(BaseModel):
    """Request to create a Stripe Checkout session."""

    stripe_price_id: str = Field(..., min_length=1)
    success_url: str | None = None
    cancel_url: str | None = None


# --- Response schemas ---


class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None
    amount: int
    currency: str
    interval: str
    interval_count: int
    stripe_product_id: str
    stripe_price_id: str
    features: list[str] | None
    is_active: bool
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata")
    )
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PlansListResponse(BaseModel):
    """All available plans."""

    plans: list[PlanResponse]


class PlanSyncResponse(BaseModel):
    """Counters returned by a full catalog resync from Stripe."""

    deleted_plans: int
    inserted_plans: int
    stripe_prices_processed: int
    stripe_products_processed: int


class CustomerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID | None = None
    user_id: uuid.UUID
    stripe_customer_id: str | None
    email: str | None = None
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata")
    )
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CheckoutResponse(BaseModel):
    """Stripe Checkout session URL returned to frontend."""

    checkout_url: str | None
    session_id: str


class SuccessResponse(BaseModel):
    success: bool = True


class WebhookAck(BaseModel):
    received: bool = True
