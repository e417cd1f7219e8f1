"""Purchase history API: the caller's own purchases."""

from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.models.user import User
from app.schemas.common import Envelope
from app.schemas.purchase import PurchaseListData, PurchaseResponse
from app.services import purchase_service

router = APIRouter(prefix="/api/v1/purchases", tags=["purchases"])


@router.get("", response_model=Envelope[PurchaseListData])
async def list_my_purchases(
    status: Literal["pending", "completed", "failed", "refunded"] | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> Envelope[PurchaseListData]:
    """Purchases, renewals and refunds of the authenticated user, newest first."""
    purchases = await purchase_service.list_purchases(
        db, current_user, status=status, limit=limit, offset=offset
    )
    return Envelope(
        data=PurchaseListData(
            purchases=[PurchaseResponse.model_validate(p) for p in purchases],
            limit=limit,
            offset=offset,
        )
    )
