"""Create the CoinVault membership products and prices in Stripe test mode.

Run once, then the plan catalog is filled from Stripe:
    python -m coinvault.billing.scripts.create_stripe_products

Pass ``--sync-only`` to skip creation and only rebuild the local catalog.
"""

import asyncio
import sys

from coinvault.billing import stripe_client
from coinvault.billing.plans import sync_all_plans_from_stripe
from coinvault.config import settings
from coinvault.database import engine, session_scope

MEMBERSHIPS = [
    {
        "name": "CoinVault Collector",
        "description": "Unlimited favorites, price alerts on 25 coins, monthly market digest",
        "amount": 900,
        "interval": "month",
    },
    {
        "name": "CoinVault Numismatist",
        "description": "Everything in Collector plus full grading history, unlimited alerts and CSV export",
        "amount": 2900,
        "interval": "month",
    },
    {
        "name": "CoinVault Numismatist (annual)",
        "description": "Numismatist billed yearly, two months free",
        "amount": 29000,
        "interval": "year",
    },
]


async def main(sync_only: bool = False) -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    if not sync_only:
        for membership in MEMBERSHIPS:
            product = await stripe_client.create_product(
                name=membership["name"],
                description=membership["description"],
                metadata={"source": "create_stripe_products"},
            )
            price = await stripe_client.create_price(
                product_id=product.id,
                amount=membership["amount"],
                currency="usd",
                interval=membership["interval"],
            )
            print(f"Created product: {product.name} ({product.id})")
            print(f"  Price: ${membership['amount'] / 100:.2f}/{membership['interval']} ({price.id})")

    async with session_scope() as db:
        summary = await sync_all_plans_from_stripe(db)
    await engine.dispose()

    print("\n--- Plan catalog synced ---")
    for key, value in summary.items():
        print(f"{key}: {value}")


if __name__ == "__main__":
    asyncio.run(main(sync_only="--sync-only" in sys.argv[1:]))
