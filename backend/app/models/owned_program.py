"""Program ownership: one row per (user, program)."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, UUIDPrimaryKeyMixin, utcnow


class OwnedProgram(UUIDPrimaryKeyMixin, Base):
    """A program a user has purchased. The unique constraint gives set semantics."""

    __tablename__ = "owned_programs"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    program_slug: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(default=utcnow)

    user: Mapped["User"] = relationship(back_populates="owned_programs", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    __table_args__ = (
        UniqueConstraint("user_id", "program_slug", name="uq_owned_programs_user_slug"),
    )

    def __repr__(self) -> str:
        return f"<OwnedProgram(user_id={self.user_id}, program_slug={self.program_slug!r})>"
