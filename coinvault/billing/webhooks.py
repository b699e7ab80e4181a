"""Stripe webhook events — decode into known kinds and dispatch to services."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.billing.customers import delete_customer_by_stripe_id, sync_customer_from_stripe
from coinvault.billing.plans import sync_plan_from_price, sync_plan_from_product
from coinvault.services.subscription_sync import handle_checkout_session, sync_from_stripe

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SUBSCRIPTION = "subscription"
    CHECKOUT_SESSION = "checkout_session"
    PRICE = "price"
    PRODUCT = "product"
    CUSTOMER = "customer"
    CUSTOMER_DELETED = "customer_deleted"


# Event types we act on; everything else is acknowledged and ignored
EVENT_KINDS: dict[str, EventKind] = {
    "customer.subscription.created": EventKind.SUBSCRIPTION,
    "customer.subscription.updated": EventKind.SUBSCRIPTION,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION,
    "customer.subscription.paused": EventKind.SUBSCRIPTION,
    "customer.subscription.resumed": EventKind.SUBSCRIPTION,
    "checkout.session.completed": EventKind.CHECKOUT_SESSION,
    "checkout.session.async_payment_succeeded": EventKind.CHECKOUT_SESSION,
    "checkout.session.async_payment_failed": EventKind.CHECKOUT_SESSION,
    "checkout.session.expired": EventKind.CHECKOUT_SESSION,
    "price.created": EventKind.PRICE,
    "price.updated": EventKind.PRICE,
    "price.deleted": EventKind.PRICE,
    "product.created": EventKind.PRODUCT,
    "product.updated": EventKind.PRODUCT,
    "product.deleted": EventKind.PRODUCT,
    "customer.created": EventKind.CUSTOMER,
    "customer.updated": EventKind.CUSTOMER,
    "customer.deleted": EventKind.CUSTOMER_DELETED,
}


@dataclass(frozen=True)
class BillingEvent:
    """A verified Stripe event narrowed to a known kind."""

    id: str
    type: str
    kind: EventKind
    data: Any


def decode_event(event: stripe.Event) -> BillingEvent | None:
    """Narrow a verified event to a ``BillingEvent``; ``None`` for unknown types."""
    kind = EVENT_KINDS.get(event.type)
    if kind is None:
        return None
    return BillingEvent(id=event.id, type=event.type, kind=kind, data=event.data.object)


async def dispatch_event(db: AsyncSession, event: BillingEvent) -> None:
    """Route a decoded event to its handler. The caller owns the commit."""
    logger.info("Processing webhook event: %s (id=%s)", event.type, event.id)

    if event.kind is EventKind.SUBSCRIPTION:
        await sync_from_stripe(db, event.data)
    elif event.kind is EventKind.CHECKOUT_SESSION:
        await handle_checkout_session(db, event.data)
    elif event.kind is EventKind.PRICE:
        await sync_plan_from_price(db, event.data)
    elif event.kind is EventKind.PRODUCT:
        await sync_plan_from_product(db, event.data)
    elif event.kind is EventKind.CUSTOMER:
        await sync_customer_from_stripe(db, event.data)
    elif event.kind is EventKind.CUSTOMER_DELETED:
        await delete_customer_by_stripe_id(db, event.data.id)
