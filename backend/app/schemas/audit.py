"""Pydantic v2 response schemas for the audit log."""

import uuid
from datetime import datetime
from typing import Any

from app.schemas.common import CamelModel


class AuditEntryResponse(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID | None
    subject: str | None
    action: str
    details: dict[str, Any]
    actor: str
    ip_address: str | None
    user_agent: str | None
    created_at: datetime


class AuditListData(CamelModel):
    entries: list[AuditEntryResponse]
    limit: int
    offset: int
