"""Stripe customer mapping — one Stripe customer per user."""

import uuid
from typing import Any

from sqlalchemy import JSON, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from coinvault.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class StripeCustomer(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Links a user to the Stripe customer that pays for their subscriptions."""

    __tablename__ = "stripe_customers"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    stripe_customer_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<StripeCustomer(user_id={self.user_id}, stripe_customer_id={self.stripe_customer_id})>"
