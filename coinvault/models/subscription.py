"""Subscription model — per-user billing lifecycle, mirrored from Stripe when backed by it."""

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from coinvault.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"


# Statuses in which a user holds their single subscription slot
ACTIVE_STATUSES: frozenset[str] = frozenset(
    {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.TRIALING.value,
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.INCOMPLETE.value,
    }
)


@dataclass(frozen=True)
class LocalBacking:
    """Lifecycle driven directly by API calls; nothing exists in Stripe."""


@dataclass(frozen=True)
class ExternalBacking:
    """Lifecycle owned by a Stripe subscription; status comes from reconciliation only."""

    subscription_id: str


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks one subscription of a user, local-only or backed by Stripe."""

    __tablename__ = "subscriptions"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Plan
    plan: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    plan_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("plans.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Stripe identifiers; the subscription id is unique so concurrent upserts collapse
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True
    )

    # Lifecycle timestamps (naive UTC)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at: Mapped[datetime | None] = mapped_column(nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    stripe_invoice_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    pause_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    last_event_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def backing(self) -> LocalBacking | ExternalBacking:
        if self.stripe_subscription_id:
            return ExternalBacking(self.stripe_subscription_id)
        return LocalBacking()

    @property
    def is_external(self) -> bool:
        return isinstance(self.backing, ExternalBacking)

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, plan={self.plan}, status={self.status})>"
