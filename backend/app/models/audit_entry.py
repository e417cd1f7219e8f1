"""Audit entries: append-only record of entitlement changes."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UUIDPrimaryKeyMixin, utcnow


class AuditEntry(UUIDPrimaryKeyMixin, Base):
    """One entitlement-changing action. Rows outlive the user they describe."""

    __tablename__ = "audit_entries"

    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)  # email at time of action
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    actor: Mapped[str] = mapped_column(String(50), nullable=False, default="user")  # user, webhook, reconciler
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)

    __table_args__ = (Index("ix_audit_entries_user_id_created_at", "user_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<AuditEntry(id={self.id}, user_id={self.user_id}, action={self.action!r})>"
