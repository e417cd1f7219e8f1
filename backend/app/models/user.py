"""User model: identity, role, and the link to the payments provider."""

from datetime import datetime

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Platform account. Commerce state hangs off it via the relationships below."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(50), default="client", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    token_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Stripe customer: write-once, survives erasure
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    billing_environment: Mapped[str | None] = mapped_column(String(20), nullable=True)

    erased_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    subscription: Mapped["Subscription | None"] = relationship(  # type: ignore[name-defined]  # noqa: F821
        "Subscription",
        back_populates="user",
        uselist=False,
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    owned_programs: Mapped[list["OwnedProgram"]] = relationship(  # type: ignore[name-defined]  # noqa: F821
        "OwnedProgram", back_populates="user", lazy="selectin", cascade="all, delete-orphan"
    )
    purchases: Mapped[list["Purchase"]] = relationship(  # type: ignore[name-defined]  # noqa: F821
        "Purchase", back_populates="user", lazy="select", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role!r}>"
