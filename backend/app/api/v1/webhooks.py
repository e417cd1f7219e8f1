"""Stripe webhook endpoint: receives and processes Stripe events."""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import get_session_factory
from app.api.errors import error_response
from app.billing.exceptions import Conflict, ProviderUnavailable
from app.billing.ingestor import WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=None)
async def stripe_webhook(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict[str, object] | JSONResponse:
    """Receive and process Stripe webhook events.

    2xx tells Stripe to stop: processed, duplicate, ignored or dead. 5xx asks
    it to redeliver. A bad signature is rejected with 400 before parsing.
    """
    # Raw bytes are required for signature verification
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    ingestor = WebhookIngestor(session_factory)
    try:
        result = await ingestor.ingest(payload, sig_header)
    except (ProviderUnavailable, Conflict) as e:
        logger.warning("Webhook processing deferred for redelivery: %s", e.message)
        return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, e.code, e.message)
    except SQLAlchemyError:
        logger.exception("Database error while processing webhook")
        return error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "DATABASE_UNAVAILABLE",
            "Webhook processing failed, please retry",
        )

    return {"received": True, "status": result.status, "eventId": result.event_id}
