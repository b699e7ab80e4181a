"""User model — local mirror of identities issued by Supabase."""

import uuid

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from coinvault.database import Base, TimestampMixin


class User(TimestampMixin, Base):
    """Identity-provider user; ``id`` is the token subject, not generated locally."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(50), default="user", nullable=False)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role!r}>"
