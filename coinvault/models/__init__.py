"""SQLAlchemy models for CoinVault.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from coinvault.models.customer import StripeCustomer
from coinvault.models.plan import Plan
from coinvault.models.subscription import (
    ACTIVE_STATUSES,
    ExternalBacking,
    LocalBacking,
    Subscription,
    SubscriptionStatus,
)
from coinvault.models.user import User

__all__ = [
    "ACTIVE_STATUSES",
    "ExternalBacking",
    "LocalBacking",
    "Plan",
    "StripeCustomer",
    "Subscription",
    "SubscriptionStatus",
    "User",
]
