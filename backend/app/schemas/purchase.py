"""Pydantic v2 response schemas for purchase history."""

import uuid
from datetime import datetime

from app.schemas.common import CamelModel


class PurchaseItemResponse(CamelModel):
    product_key: str
    name: str
    quantity: int
    unit_price: int
    total_price: int


class PurchaseResponse(CamelModel):
    id: uuid.UUID
    kind: str
    status: str
    items: list[PurchaseItemResponse]
    total_amount: int
    currency: str
    stripe_subscription_id: str | None
    stripe_invoice_id: str | None
    created_at: datetime
    completed_at: datetime | None


class PurchaseListData(CamelModel):
    purchases: list[PurchaseResponse]
    limit: int
    offset: int
