"""Audit log API: admin-only query by user and time range."""

import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_admin, get_db
from app.models.user import User
from app.schemas.audit import AuditEntryResponse, AuditListData
from app.schemas.common import Envelope
from app.services import audit_service

router = APIRouter(prefix="/api/v1/audit", tags=["audit"])


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.get("", response_model=Envelope[AuditListData])
async def list_audit_entries(
    user_id: uuid.UUID | None = Query(None, alias="userId"),
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
    action: str | None = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(get_current_admin),
) -> Envelope[AuditListData]:
    """Audit entries, newest first. Naive ``since``/``until`` values are taken as UTC."""
    entries = await audit_service.list_entries(
        db,
        user_id=user_id,
        since=_naive_utc(since),
        until=_naive_utc(until),
        action=action,
        limit=limit,
        offset=offset,
    )
    return Envelope(
        data=AuditListData(
            entries=[AuditEntryResponse.model_validate(e) for e in entries],
            limit=limit,
            offset=offset,
        )
    )
