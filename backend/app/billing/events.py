"""Pydantic schemas for Stripe webhook payloads.

The envelope is validated first; ``data.object`` is then validated against
the schema registered for the event ``type``. Only the fields the handlers
read are declared; everything else Stripe sends is kept but ignored.
"""

import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.billing.exceptions import MalformedEvent


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert a Stripe Unix timestamp to naive UTC."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


class StripePayload(BaseModel):
    model_config = ConfigDict(extra="allow")


# --- Envelope ---


class EventData(StripePayload):
    object: dict[str, Any]


class WebhookEvent(StripePayload):
    """Signed event envelope ``{id, type, created, data.object}``."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int
    livemode: bool = False
    data: EventData

    @property
    def created_at(self) -> datetime:
        return ts_to_naive(self.created)


# --- Objects ---


class Price(StripePayload):
    id: str


class SubscriptionItem(StripePayload):
    price: Price | None = None
    # Since API version 2025-08-27 the period lives on the item.
    current_period_start: int | None = None
    current_period_end: int | None = None


class ItemList(StripePayload):
    data: list[SubscriptionItem] = []


class SubscriptionObject(StripePayload):
    id: str
    customer: str | None = None
    status: str
    cancel_at_period_end: bool = False
    current_period_start: int | None = None
    current_period_end: int | None = None
    items: ItemList | None = None
    metadata: dict[str, str] = {}

    @property
    def first_item(self) -> SubscriptionItem | None:
        if self.items and self.items.data:
            return self.items.data[0]
        return None

    @property
    def price_id(self) -> str | None:
        item = self.first_item
        return item.price.id if item and item.price else None

    @property
    def period(self) -> tuple[datetime | None, datetime | None]:
        """Current period, read from the first item and falling back to the subscription."""
        item = self.first_item
        start = item.current_period_start if item else None
        end = item.current_period_end if item else None
        return (
            ts_to_naive(start if start is not None else self.current_period_start),
            ts_to_naive(end if end is not None else self.current_period_end),
        )


class CheckoutSessionObject(StripePayload):
    id: str
    mode: str
    customer: str | None = None
    subscription: str | SubscriptionObject | None = None
    payment_intent: str | None = None
    payment_status: str | None = None
    metadata: dict[str, str] = {}

    @property
    def subscription_id(self) -> str | None:
        if isinstance(self.subscription, SubscriptionObject):
            return self.subscription.id
        return self.subscription


class LinePeriod(StripePayload):
    start: int | None = None
    end: int | None = None


class InvoiceLine(StripePayload):
    price: Price | None = None
    period: LinePeriod | None = None


class InvoiceLineList(StripePayload):
    data: list[InvoiceLine] = []


class SubscriptionDetails(StripePayload):
    subscription: str | None = None


class InvoiceParent(StripePayload):
    subscription_details: SubscriptionDetails | None = None


class InvoicePaymentDetails(StripePayload):
    type: str | None = None
    payment_intent: str | None = None


class InvoicePaymentObject(StripePayload):
    """One payment applied to an invoice (``invoice_payment``)."""

    id: str
    invoice: str
    status: str | None = None
    amount_paid: int | None = None
    payment: InvoicePaymentDetails | None = None

    @property
    def payment_intent_id(self) -> str | None:
        return self.payment.payment_intent if self.payment else None


class InvoicePaymentList(StripePayload):
    data: list[InvoicePaymentObject] = []


class InvoiceObject(StripePayload):
    id: str
    customer: str | None = None
    subscription: str | None = None
    # Newer API versions move the subscription under parent.subscription_details.
    parent: InvoiceParent | None = None
    billing_reason: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str | None = None
    # Removed from the invoice in API 2025-03-31; payments carry it since.
    payment_intent: str | None = None
    payments: InvoicePaymentList | None = None
    lines: InvoiceLineList | None = None
    # Not a Stripe field: filled in before dispatch when the lines carry no period.
    fetched_subscription: SubscriptionObject | None = None

    @property
    def subscription_id(self) -> str | None:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None

    @property
    def payment_intent_id(self) -> str | None:
        if self.payments:
            for invoice_payment in self.payments.data:
                if invoice_payment.payment_intent_id:
                    return invoice_payment.payment_intent_id
        return self.payment_intent

    @property
    def first_line(self) -> InvoiceLine | None:
        if self.lines and self.lines.data:
            return self.lines.data[0]
        return None

    @property
    def price_id(self) -> str | None:
        line = self.first_line
        return line.price.id if line and line.price else None

    @property
    def period(self) -> tuple[datetime | None, datetime | None]:
        line = self.first_line
        if line is None or line.period is None:
            return None, None
        return ts_to_naive(line.period.start), ts_to_naive(line.period.end)


class ChargeObject(StripePayload):
    id: str
    customer: str | None = None
    payment_intent: str | None = None
    # Only sent by API versions before 2025-03-31
    invoice: str | None = None
    amount: int = 0
    amount_refunded: int = 0
    refunded: bool = False


EVENT_OBJECT_SCHEMAS: dict[str, type[StripePayload]] = {
    "checkout.session.completed": CheckoutSessionObject,
    "customer.subscription.created": SubscriptionObject,
    "customer.subscription.updated": SubscriptionObject,
    "customer.subscription.deleted": SubscriptionObject,
    "invoice.payment_succeeded": InvoiceObject,
    "invoice.paid": InvoiceObject,
    "invoice.payment_failed": InvoiceObject,
    "invoice_payment.paid": InvoicePaymentObject,
    "charge.refunded": ChargeObject,
}


def parse_event(payload: bytes | str) -> WebhookEvent:
    """Validate the event envelope.

    Raises:
        MalformedEvent: Body is not JSON or lacks ``id``/``type``/``created``/``data.object``.
    """
    try:
        return WebhookEvent.model_validate_json(payload)
    except ValidationError as e:
        raise MalformedEvent(f"Invalid event envelope: {e.error_count()} error(s)") from e


def parse_object(event: WebhookEvent) -> StripePayload | None:
    """Validate ``data.object`` against the schema for ``event.type``.

    Returns None for event types without a registered schema.

    Raises:
        MalformedEvent: The object does not match the schema.
    """
    schema = EVENT_OBJECT_SCHEMAS.get(event.type)
    if schema is None:
        return None
    try:
        return schema.model_validate(event.data.object)
    except ValidationError as e:
        raise MalformedEvent(f"Invalid {event.type} payload: {e.error_count()} error(s)") from e


def readable_event_id(payload: bytes | str) -> tuple[str | None, str | None]:
    """Best-effort ``(id, type)`` from a body that failed envelope validation."""
    try:
        raw = json.loads(payload)
    except ValueError:
        return None, None
    if not isinstance(raw, dict):
        return None, None
    event_id = raw.get("id")
    event_type = raw.get("type")
    return (
        event_id if isinstance(event_id, str) and event_id else None,
        event_type if isinstance(event_type, str) else None,
    )
