"""Subscription model: the local projection of a user's Stripe subscription."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow

ENTITLED_STATUSES = frozenset({"active", "past_due"})


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Subscription state for one user.

    ``last_updated`` is the ordering signal of the snapshot currently stored
    (the provider event timestamp for webhook writes, the moment the
    transition logically happened for sweeps, wall-clock time otherwise).
    ``version`` is a compare-and-set counter: every UPDATE is conditioned on
    it, so two writers racing on the same row cannot both win.
    """

    __tablename__ = "subscriptions"

    # One subscription per user (UNIQUE enforces one-to-one)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    # Plan & status
    plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="none", server_default="none")

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True, index=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )

    last_updated: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    __mapper_args__ = {"version_id_col": version}

    def is_active_at(self, now: datetime) -> bool:
        return (
            self.status in ENTITLED_STATUSES
            and self.current_period_end is not None
            and self.current_period_end > now
        )

    @property
    def is_active(self) -> bool:
        """Entitled iff status is active/past_due and the period has not ended."""
        return self.is_active_at(utcnow())

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, plan={self.plan}, status={self.status})>"
