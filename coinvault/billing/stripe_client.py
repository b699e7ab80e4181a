"""Async Stripe API wrapper — the only module that talks to Stripe directly.

Every call is awaited by its caller and any ``stripe.StripeError`` is re-raised
as ``IntegrationError`` so that local state is only written after Stripe
answered successfully.
"""

import json
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

import stripe
from stripe import StripeClient

from coinvault.config import settings
from coinvault.exceptions import IntegrationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Expansions needed by reconciliation: price/product of each item and the latest invoice
SUBSCRIPTION_EXPAND = ["latest_invoice", "items.data.price.product"]


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )


async def _call(action: str, request: Awaitable[T]) -> T:
    try:
        return await request
    except stripe.StripeError as e:
        logger.error("Stripe %s failed: %s", action, e)
        message = getattr(e, "user_message", None) or str(e)
        raise IntegrationError(f"Stripe {action} failed: {message}") from e


def object_id(value: Any) -> str | None:
    """Stripe references are either an ID string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


def to_plain_dict(value: Any) -> dict[str, Any]:
    """Copy a Stripe metadata object (or a plain mapping) into a dict.

    ``StripeObject`` is no longer a ``dict`` subclass in current SDK releases,
    so ``dict(obj)`` raises ``TypeError``; ``to_dict()`` is the supported way out.
    """
    if value is None:
        return {}
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(value)


def to_stripe_metadata(values: dict[str, Any] | None) -> dict[str, str]:
    """Flatten a metadata dict into Stripe's string-only format, dropping ``None`` values."""
    result: dict[str, str] = {}
    for key, value in (values or {}).items():
        if value is None:
            continue
        result[str(key)] = value if isinstance(value, str) else json.dumps(value, default=str)
    return result


# --- Customers ---


async def create_customer(
    email: str | None,
    name: str | None,
    user_id: str,
    metadata: dict[str, Any] | None = None,
) -> stripe.Customer:
    """Create a Stripe customer linked to a CoinVault user."""
    client = get_stripe_client()
    logger.info("Creating Stripe customer for user %s (%s)", user_id, email)
    params: dict[str, Any] = {
        "metadata": {**to_stripe_metadata(metadata), "user_id": user_id},
    }
    if email:
        params["email"] = email
    if name:
        params["name"] = name
    customer = await _call("customer create", client.v1.customers.create_async(params=params))
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer


async def update_customer(customer_id: str, params: dict[str, Any]) -> stripe.Customer:
    client = get_stripe_client()
    logger.info("Updating Stripe customer %s (%s)", customer_id, ", ".join(sorted(params)))
    return await _call("customer update", client.v1.customers.update_async(customer_id, params=params))


async def delete_customer(customer_id: str) -> None:
    client = get_stripe_client()
    logger.info("Deleting Stripe customer %s", customer_id)
    await _call("customer delete", client.v1.customers.delete_async(customer_id))


# --- Subscriptions ---


async def create_subscription(
    customer_id: str,
    price_id: str,
    metadata: dict[str, Any],
    trial_period_days: int | None = None,
) -> stripe.Subscription:
    """Create a Stripe subscription for a single price."""
    client = get_stripe_client()
    params: dict[str, Any] = {
        "customer": customer_id,
        "items": [{"price": price_id}],
        "metadata": to_stripe_metadata(metadata),
        "expand": SUBSCRIPTION_EXPAND,
    }
    if trial_period_days:
        params["trial_period_days"] = trial_period_days
    logger.info("Creating subscription for customer %s, price %s", customer_id, price_id)
    subscription = await _call("subscription create", client.v1.subscriptions.create_async(params=params))
    logger.info("Created Stripe subscription %s (status=%s)", subscription.id, subscription.status)
    return subscription


async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID with items and latest invoice expanded."""
    client = get_stripe_client()
    return await _call(
        "subscription retrieve",
        client.v1.subscriptions.retrieve_async(
            subscription_id, params={"expand": SUBSCRIPTION_EXPAND}
        ),
    )


async def update_subscription(subscription_id: str, params: dict[str, Any]) -> stripe.Subscription:
    client = get_stripe_client()
    logger.info("Updating Stripe subscription %s (%s)", subscription_id, ", ".join(sorted(params)))
    return await _call(
        "subscription update",
        client.v1.subscriptions.update_async(
            subscription_id, params={**params, "expand": SUBSCRIPTION_EXPAND}
        ),
    )


async def cancel_subscription(subscription_id: str, reason: str | None = None) -> stripe.Subscription:
    """Cancel immediately, without prorating and without a final invoice."""
    client = get_stripe_client()
    params: dict[str, Any] = {
        "invoice_now": False,
        "prorate": False,
        "expand": SUBSCRIPTION_EXPAND,
    }
    if reason:
        params["cancellation_details"] = {"comment": reason}
    logger.info("Canceling Stripe subscription %s", subscription_id)
    return await _call(
        "subscription cancel",
        client.v1.subscriptions.cancel_async(subscription_id, params=params),
    )


async def get_invoice(invoice_id: str) -> stripe.Invoice:
    client = get_stripe_client()
    return await _call("invoice retrieve", client.v1.invoices.retrieve_async(invoice_id))


# --- Checkout ---


async def create_checkout_session(
    customer_id: str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, Any] | None = None,
) -> stripe.checkout.Session:
    """Create a Stripe Checkout Session for a subscription purchase."""
    client = get_stripe_client()
    logger.info(
        "Creating checkout session for customer %s, price %s",
        customer_id,
        price_id,
    )
    return await _call(
        "checkout session create",
        client.v1.checkout.sessions.create_async(
            params={
                "mode": "subscription",
                "customer": customer_id,
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": to_stripe_metadata(metadata),
            }
        ),
    )


# --- Products & prices ---


async def create_product(
    name: str,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> stripe.Product:
    client = get_stripe_client()
    params: dict[str, Any] = {"name": name, "active": True, "metadata": to_stripe_metadata(metadata)}
    if description:
        params["description"] = description
    logger.info("Creating Stripe product %r", name)
    return await _call("product create", client.v1.products.create_async(params=params))


async def update_product(product_id: str, params: dict[str, Any]) -> stripe.Product:
    client = get_stripe_client()
    logger.info("Updating Stripe product %s (%s)", product_id, ", ".join(sorted(params)))
    return await _call("product update", client.v1.products.update_async(product_id, params=params))


async def get_product(product_id: str) -> stripe.Product:
    client = get_stripe_client()
    return await _call("product retrieve", client.v1.products.retrieve_async(product_id))


async def create_price(
    product_id: str,
    amount: int,
    currency: str,
    interval: str,
    interval_count: int = 1,
    metadata: dict[str, Any] | None = None,
) -> stripe.Price:
    """Create a recurring price on an existing product."""
    client = get_stripe_client()
    logger.info(
        "Creating Stripe price for product %s: %s %s every %s %s",
        product_id,
        amount,
        currency,
        interval_count,
        interval,
    )
    return await _call(
        "price create",
        client.v1.prices.create_async(
            params={
                "product": product_id,
                "unit_amount": amount,
                "currency": currency,
                "recurring": {"interval": interval, "interval_count": interval_count},
                "metadata": to_stripe_metadata(metadata),
            }
        ),
    )


async def list_prices(starting_after: str | None = None, limit: int = 100) -> stripe.ListObject:
    """List one page of prices with their products expanded."""
    client = get_stripe_client()
    params: dict[str, Any] = {"limit": limit, "expand": ["data.product"]}
    if starting_after:
        params["starting_after"] = starting_after
    return await _call("price list", client.v1.prices.list_async(params=params))


# --- Webhooks ---


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous).

    Raises ``stripe.SignatureVerificationError`` or ``ValueError``; the webhook
    endpoint turns both into a 400 before the event is interpreted.
    """
    if not settings.stripe_webhook_secret:
        raise ValueError("STRIPE_WEBHOOK_SECRET is not configured")
    client = get_stripe_client()
    return client.construct_event(payload, sig_header, settings.stripe_webhook_secret)
