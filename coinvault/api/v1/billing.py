"""Billing API endpoints — plan catalog, Stripe customers, and Stripe Checkout."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.api.deps import get_current_identity, get_db, require_admin
from coinvault.auth.identity import VerifiedIdentity
from coinvault.billing import checkout, customers, plans
from coinvault.exceptions import AuthorizationError, NotFoundError
from coinvault.models.customer import StripeCustomer
from coinvault.models.plan import Plan
from coinvault.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    CustomerCreate,
    CustomerMetadataUpdate,
    CustomerResponse,
    PlanCreate,
    PlanResponse,
    PlansListResponse,
    PlanSyncResponse,
    PlanUpdate,
    SuccessResponse,
)
from coinvault.services.user_service import ensure_user
from coinvault.validators import parse_uuid

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(
    only_active: bool = Query(False, description="Hide archived plans"),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """List plans, cheapest first (public — no auth required)."""
    return {"plans": await plans.list_plans(db, only_active=only_active)}


@router.get("/plans/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: str, db: AsyncSession = Depends(get_db)) -> Plan:
    return await plans.get_plan(db, plan_id)


@router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    body: PlanCreate,
    db: AsyncSession = Depends(get_db),
    _admin: VerifiedIdentity = Depends(require_admin),
) -> Plan:
    """Create a Stripe product + recurring price and cache it as a plan."""
    plan = await plans.create_plan(db, body)
    await db.refresh(plan)
    return plan


@router.post("/plans/sync", response_model=PlanSyncResponse)
async def sync_plans(
    db: AsyncSession = Depends(get_db),
    _admin: VerifiedIdentity = Depends(require_admin),
) -> dict:
    """Rebuild the plan catalog from the prices currently in Stripe."""
    return await plans.sync_all_plans_from_stripe(db)


@router.patch("/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: str,
    body: PlanUpdate,
    db: AsyncSession = Depends(get_db),
    _admin: VerifiedIdentity = Depends(require_admin),
) -> Plan:
    plan = await plans.update_plan(db, plan_id, body)
    await db.refresh(plan)
    return plan


@router.delete("/plans/{plan_id}", response_model=SuccessResponse)
async def archive_plan(
    plan_id: str,
    db: AsyncSession = Depends(get_db),
    _admin: VerifiedIdentity = Depends(require_admin),
) -> SuccessResponse:
    """Archive a plan: the Stripe product is deactivated, the row is kept."""
    await plans.archive_plan(db, plan_id)
    return SuccessResponse()


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


async def _require_customer(db: AsyncSession, user_id) -> StripeCustomer:
    record = await customers.get_customer_by_user(db, user_id)
    if record is None:
        raise NotFoundError("Stripe customer not found for user")
    return record


@router.post("/customers/me", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
async def create_my_customer(
    body: CustomerCreate,
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> StripeCustomer:
    """Ensure a Stripe customer exists for the caller (admins may target ``user_id``)."""
    user_id = identity.id
    if body.user_id is not None:
        user_id = parse_uuid(body.user_id, "user identifier")
        if user_id != identity.id and not identity.is_admin:
            raise AuthorizationError("You are not allowed to manage other users' customers")

    is_self = user_id == identity.id
    if not is_self:
        await ensure_user(db, user_id)
    record = await customers.ensure_customer(
        db,
        user_id,
        email=body.email or (identity.email if is_self else None),
        name=body.name or (identity.name if is_self else None),
        metadata=body.metadata,
    )
    await db.refresh(record)
    return record


@router.get("/customers/me", response_model=CustomerResponse)
async def get_my_customer(
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> StripeCustomer:
    return await _require_customer(db, identity.id)


@router.patch("/customers/me", response_model=CustomerResponse)
async def update_my_customer_metadata(
    body: CustomerMetadataUpdate,
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> StripeCustomer:
    record = await customers.update_customer_metadata(db, identity.id, body.metadata)
    await db.refresh(record)
    return record


@router.delete("/customers/me", response_model=SuccessResponse)
async def delete_my_customer(
    delete_from_stripe: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> SuccessResponse:
    await customers.delete_customer(db, identity.id, delete_from_stripe=delete_from_stripe)
    return SuccessResponse()


@router.get("/customers/{user_id}", response_model=CustomerResponse)
async def get_customer_for_user(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    _admin: VerifiedIdentity = Depends(require_admin),
) -> StripeCustomer:
    return await _require_customer(db, parse_uuid(user_id, "user identifier"))


@router.patch("/customers/{user_id}", response_model=CustomerResponse)
async def update_customer_metadata_for_user(
    user_id: str,
    body: CustomerMetadataUpdate,
    db: AsyncSession = Depends(get_db),
    _admin: VerifiedIdentity = Depends(require_admin),
) -> StripeCustomer:
    record = await customers.update_customer_metadata(
        db, parse_uuid(user_id, "user identifier"), body.metadata
    )
    await db.refresh(record)
    return record


@router.delete("/customers/{user_id}", response_model=SuccessResponse)
async def delete_customer_for_user(
    user_id: str,
    delete_from_stripe: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    _admin: VerifiedIdentity = Depends(require_admin),
) -> SuccessResponse:
    await customers.delete_customer(
        db, parse_uuid(user_id, "user identifier"), delete_from_stripe=delete_from_stripe
    )
    return SuccessResponse()


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


@router.post("/checkout/session", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a subscription purchase."""
    session = await checkout.create_checkout_session(
        db,
        identity,
        price_id=body.stripe_price_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return CheckoutResponse(checkout_url=session["url"], session_id=session["session_id"])
