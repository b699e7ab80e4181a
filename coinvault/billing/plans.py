"""Plan catalog — pricing tiers cached from Stripe products and prices.

Subscriptions only read from here (``get_plan``, ``get_plan_by_stripe_price``,
``get_plan_by_stripe_product``). Writes come from admin endpoints and from the
``price.*`` / ``product.*`` webhooks.
"""

import logging
import uuid
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.billing import stripe_client
from coinvault.exceptions import NotFoundError
from coinvault.models.plan import Plan
from coinvault.schemas.billing import PlanCreate, PlanUpdate
from coinvault.validators import parse_uuid

logger = logging.getLogger(__name__)


# --- Reads ---


async def list_plans(db: AsyncSession, only_active: bool = False) -> list[Plan]:
    """Return plans ordered by price, cheapest first."""
    query = select(Plan).order_by(Plan.amount.asc())
    if only_active:
        query = query.where(Plan.is_active.is_(True))
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_plan(db: AsyncSession, plan_id: str | uuid.UUID) -> Plan:
    """Fetch a plan by ID, raising NotFoundError if it does not exist."""
    parsed = parse_uuid(plan_id, "plan identifier")
    plan = await db.get(Plan, parsed)
    if plan is None:
        raise NotFoundError(f'Plan with id "{parsed}" not found')
    return plan


async def get_plan_by_stripe_price(db: AsyncSession, price_id: str) -> Plan | None:
    result = await db.execute(select(Plan).where(Plan.stripe_price_id == price_id))
    return result.scalar_one_or_none()


async def get_plan_by_stripe_product(db: AsyncSession, product_id: str) -> Plan | None:
    result = await db.execute(select(Plan).where(Plan.stripe_product_id == product_id))
    return result.scalar_one_or_none()


# --- Admin writes ---


async def create_plan(db: AsyncSession, body: PlanCreate) -> Plan:
    """Create the Stripe product and price first, then persist the plan row."""
    product = await stripe_client.create_product(
        name=body.name,
        description=body.description,
        metadata=body.metadata,
    )
    price = await stripe_client.create_price(
        product_id=product.id,
        amount=body.amount,
        currency=body.currency,
        interval=body.interval,
        interval_count=body.interval_count,
        metadata=body.metadata,
    )

    plan = Plan(
        name=body.name,
        description=body.description,
        amount=body.amount,
        currency=body.currency,
        interval=body.interval,
        interval_count=body.interval_count,
        stripe_product_id=product.id,
        stripe_price_id=price.id,
        features=body.features,
        is_active=True,
        metadata_=body.metadata or {},
    )
    db.add(plan)
    await db.flush()
    logger.info("Created plan %s (%s / %s)", plan.id, product.id, price.id)
    return plan


async def update_plan(db: AsyncSession, plan_id: str, body: PlanUpdate) -> Plan:
    """Update a plan. Stripe prices are immutable, so pricing changes mint a new price."""
    plan = await get_plan(db, plan_id)

    product_params: dict[str, Any] = {}
    if body.name is not None:
        product_params["name"] = body.name
    if body.description is not None:
        product_params["description"] = body.description
    if body.metadata is not None:
        product_params["metadata"] = stripe_client.to_stripe_metadata(body.metadata)
    if body.is_active is not None:
        product_params["active"] = body.is_active
    if product_params:
        await stripe_client.update_product(plan.stripe_product_id, product_params)

    price_changed = any(
        value is not None
        for value in (body.amount, body.currency, body.interval, body.interval_count)
    )
    if price_changed:
        price = await stripe_client.create_price(
            product_id=plan.stripe_product_id,
            amount=body.amount if body.amount is not None else plan.amount,
            currency=body.currency or plan.currency,
            interval=body.interval or plan.interval,
            interval_count=body.interval_count or plan.interval_count,
            metadata=body.metadata if body.metadata is not None else plan.metadata_,
        )
        logger.info("Plan %s repointed from price %s to %s", plan.id, plan.stripe_price_id, price.id)
        plan.stripe_price_id = price.id

    for field in ("name", "description", "amount", "currency", "interval", "interval_count", "features", "is_active"):
        value = getattr(body, field)
        if value is not None:
            setattr(plan, field, value)
    if body.metadata is not None:
        plan.metadata_ = body.metadata

    await db.flush()
    return plan


async def archive_plan(db: AsyncSession, plan_id: str) -> None:
    """Deactivate the Stripe product and mark the plan inactive (rows are kept)."""
    plan = await get_plan(db, plan_id)
    await stripe_client.update_product(plan.stripe_product_id, {"active": False})
    plan.is_active = False
    await db.flush()
    logger.info("Archived plan %s", plan.id)


# --- Stripe → local sync ---


def _recurring(price: Any) -> tuple[str | None, int | None]:
    recurring = getattr(price, "recurring", None)
    if not recurring:
        return None, None
    return getattr(recurring, "interval", None), getattr(recurring, "interval_count", None)


async def sync_plan_from_price(db: AsyncSession, price: Any) -> Plan | None:
    """Upsert the plan attached to a price's product (``price.*`` webhooks)."""
    product_id = stripe_client.object_id(getattr(price, "product", None))
    if not product_id:
        logger.info("Price %s has no product reference, skipping", getattr(price, "id", None))
        return None

    plan = await get_plan_by_stripe_product(db, product_id)
    interval, interval_count = _recurring(price)
    metadata = getattr(price, "metadata", None)
    if metadata is not None:
        metadata = stripe_client.to_plain_dict(metadata)
    elif plan is not None:
        metadata = plan.metadata_
    is_active = plan.is_active if plan else True
    if getattr(price, "active", True) is False:
        is_active = False

    values: dict[str, Any] = {
        "name": getattr(price, "nickname", None) or (plan.name if plan else "Plan"),
        "amount": getattr(price, "unit_amount", None) or (plan.amount if plan else 0),
        "currency": getattr(price, "currency", None) or (plan.currency if plan else "usd"),
        "interval": interval or (plan.interval if plan else "month"),
        "interval_count": interval_count or (plan.interval_count if plan else 1),
        "stripe_price_id": price.id,
        "is_active": is_active,
        "metadata_": metadata or {},
    }

    if plan is not None:
        for key, value in values.items():
            setattr(plan, key, value)
        await db.flush()
        logger.info("Synced plan %s from price %s", plan.id, price.id)
        return plan

    plan = Plan(stripe_product_id=product_id, description=None, features=None, **values)
    db.add(plan)
    await db.flush()
    logger.info("Inserted plan %s from price %s", plan.id, price.id)
    return plan


async def sync_plan_from_product(db: AsyncSession, product: Any) -> Plan | None:
    """Refresh name/description/active flag of a known plan (``product.*`` webhooks)."""
    plan = await get_plan_by_stripe_product(db, product.id)
    if plan is None:
        logger.debug("Product %s is not mapped to a plan, skipping", product.id)
        return None

    plan.name = getattr(product, "name", None) or plan.name
    plan.description = getattr(product, "description", None) or plan.description
    metadata = getattr(product, "metadata", None)
    if metadata is not None:
        plan.metadata_ = stripe_client.to_plain_dict(metadata)
    active = getattr(product, "active", None)
    if active is not None:
        plan.is_active = bool(active)
    if getattr(product, "deleted", False):
        plan.is_active = False
    await db.flush()
    logger.info("Synced plan %s from product %s", plan.id, product.id)
    return plan


async def sync_all_plans_from_stripe(db: AsyncSession) -> dict[str, int]:
    """Replace the local catalog with every price currently in Stripe."""
    rows: list[dict[str, Any]] = []
    product_ids: set[str] = set()
    starting_after: str | None = None
    prices_seen = 0

    while True:
        page = await stripe_client.list_prices(starting_after=starting_after)
        for price in page.data:
            prices_seen += 1
            product = getattr(price, "product", None)
            product_id = stripe_client.object_id(product)
            if not product_id or product_id in product_ids:
                # One plan row per product; later prices of the same product are skipped
                continue
            product_ids.add(product_id)
            if isinstance(product, str):
                product = await stripe_client.get_product(product)
            if product is not None and getattr(product, "deleted", False):
                product = None

            interval, interval_count = _recurring(price)
            metadata = getattr(price, "metadata", None)
            active = getattr(price, "active", None)
            if active is None and product is not None:
                active = getattr(product, "active", True)
            rows.append(
                {
                    "name": (getattr(product, "name", None) if product else None)
                    or getattr(price, "nickname", None)
                    or "Plan",
                    "description": getattr(product, "description", None) if product else None,
                    "amount": getattr(price, "unit_amount", None) or 0,
                    "currency": price.currency,
                    "interval": interval or "month",
                    "interval_count": interval_count or 1,
                    "stripe_product_id": product_id,
                    "stripe_price_id": price.id,
                    "features": None,
                    "metadata_": stripe_client.to_plain_dict(metadata),
                    "is_active": True if active is None else bool(active),
                }
            )

        if not page.has_more or not page.data:
            break
        starting_after = page.data[-1].id

    deleted = await db.execute(delete(Plan))
    for row in rows:
        db.add(Plan(**row))
    await db.flush()

    summary = {
        "deleted_plans": deleted.rowcount or 0,
        "inserted_plans": len(rows),
        "stripe_prices_processed": prices_seen,
        "stripe_products_processed": len(product_ids),
    }
    logger.info("Plan catalog resynced from Stripe: %s", summary)
    return summary
