"""Plan model — pricing tiers mirrored from Stripe products and prices."""

from typing import Any

from sqlalchemy import JSON, Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from coinvault.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Plan(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A cached Stripe product + recurring price pair."""

    __tablename__ = "plans"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # minor units (cents)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="usd")
    interval: Mapped[str] = mapped_column(String(20), nullable=False, default="month")
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Stripe identifiers
    stripe_product_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    stripe_price_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    features: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    # ``metadata`` is reserved on declarative classes
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, name={self.name!r}, price={self.stripe_price_id})>"
