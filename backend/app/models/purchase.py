"""Purchase model: one checkout attempt or renewal charge."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

PURCHASE_KINDS = ("subscription-start", "subscription-renewal", "one-time-program")
PURCHASE_STATUSES = ("pending", "completed", "failed", "refunded")

# Allowed status transitions; anything else is rejected.
PURCHASE_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"completed", "failed"}),
    "completed": frozenset({"refunded"}),
    "failed": frozenset(),
    "refunded": frozenset(),
}


class Purchase(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A purchase recorded locally before the provider confirms it."""

    __tablename__ = "purchases"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[str] = mapped_column(String(50), nullable=False)

    # Stripe identifiers
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_checkout_session_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_invoice_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    # [{productKey, name, quantity, unitPrice, totalPrice}]
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    total_amount: Mapped[int] = mapped_column(Integer, default=0)  # cents
    currency: Mapped[str] = mapped_column(String(10), default="jmd")

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billing_environment: Mapped[str] = mapped_column(String(20), nullable=False, default="test")
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    user: Mapped["User"] = relationship(back_populates="purchases", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    __table_args__ = (Index("ix_purchases_status_created_at", "status", "created_at"),)

    @property
    def product_key(self) -> str | None:
        """Plan key or program slug of the first line item."""
        if not self.items:
            return None
        return self.items[0].get("productKey")

    def can_transition_to(self, status: str) -> bool:
        return status in PURCHASE_TRANSITIONS.get(self.status, frozenset())

    def __repr__(self) -> str:
        return f"<Purchase(id={self.id}, user_id={self.user_id}, kind={self.kind!r}, status={self.status!r})>"
