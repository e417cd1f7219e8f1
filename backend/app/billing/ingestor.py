"""Webhook ingestor: signature check, deduplication and dispatch.

Protocol for one delivery:

1. Verify the signature against the raw body; reject before parsing.
2. If ``processed_events`` already has the event ID, acknowledge and stop.
   Otherwise validate ``data.object`` and fetch anything it only references
   from Stripe, before any transaction is open.
3. Run the handler and insert the ProcessedEvent row in the same
   transaction, so the state change and the dedup record commit together.
4. Permanent failures are rolled back, recorded as ``dead`` and acknowledged
   so Stripe stops redelivering. Retryable failures propagate and the
   endpoint answers 5xx, leaving no ProcessedEvent behind.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.billing.events import WebhookEvent, parse_event, parse_object, readable_event_id
from app.billing.exceptions import Conflict, MalformedEvent, PermanentEventError
from app.billing.stripe_client import verify_webhook_signature
from app.billing.webhooks import expand_event_object, get_handler
from app.config import settings
from app.database import utcnow
from app.models.processed_event import ProcessedEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    status: str  # processed, duplicate, ignored, dead
    event_id: str | None = None
    event_type: str | None = None


class WebhookIngestor:
    """Processes signed Stripe deliveries, one transaction per attempt."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._max_attempts = max_attempts

    async def ingest(self, payload: bytes, sig_header: str) -> IngestResult:
        """Verify, parse and process one delivery.

        Raises:
            InvalidSignature: Signature header missing, stale or wrong.
            ConfigurationMissing: No webhook signing secret configured.
            ProviderUnavailable / Conflict / SQLAlchemyError: Retryable; Stripe
                should redeliver.
        """
        verify_webhook_signature(payload, sig_header)

        try:
            event = parse_event(payload)
        except MalformedEvent as e:
            event_id, event_type = readable_event_id(payload)
            logger.warning("Malformed webhook payload (id=%s): %s", event_id, e.message)
            if event_id is None:
                return IngestResult("dead")
            return await self._record_dead(event_id, event_type or "unknown", e.message)

        return await self.process(event)

    async def process(self, event: WebhookEvent) -> IngestResult:
        handler = get_handler(event.type)
        if handler is None:
            logger.debug("Unhandled webhook event type: %s", event.type)
            return IngestResult("ignored", event.id, event.type)

        if await self._is_processed(event.id):
            logger.info("Duplicate webhook event %s (%s), skipping", event.id, event.type)
            return IngestResult("duplicate", event.id, event.type)

        try:
            obj = await expand_event_object(event, parse_object(event))
        except MalformedEvent as e:
            logger.warning("Unreadable webhook event %s (%s): %s", event.id, event.type, e.message)
            return await self._record_dead(event.id, event.type, e.message)

        for attempt in range(1, self._max_attempts + 1):
            async with self._session_factory() as db:
                if await db.get(ProcessedEvent, event.id) is not None:
                    logger.info("Duplicate webhook event %s (%s), skipping", event.id, event.type)
                    return IngestResult("duplicate", event.id, event.type)

                logger.info(
                    "Processing webhook event: %s (id=%s, attempt %d)", event.type, event.id, attempt
                )
                try:
                    await handler(db, event, obj)
                    db.add(
                        ProcessedEvent(
                            event_id=event.id,
                            event_type=event.type,
                            outcome="processed",
                        )
                    )
                    await db.commit()
                    return IngestResult("processed", event.id, event.type)
                except PermanentEventError as e:
                    await db.rollback()
                    logger.warning(
                        "Permanent failure for webhook event %s (%s): %s",
                        event.id,
                        event.type,
                        e.message,
                    )
                    return await self._record_dead(event.id, event.type, e.message)
                except (StaleDataError, IntegrityError) as e:
                    await db.rollback()
                    if await self._is_processed(event.id):
                        logger.info("Webhook event %s was processed concurrently", event.id)
                        return IngestResult("duplicate", event.id, event.type)
                    logger.warning(
                        "Concurrent update while processing %s (attempt %d/%d): %s",
                        event.id,
                        attempt,
                        self._max_attempts,
                        type(e).__name__,
                    )
                except Exception:
                    await db.rollback()
                    logger.exception("Retryable failure processing webhook event %s", event.id)
                    raise

        raise Conflict(f"Webhook event {event.id} kept conflicting after {self._max_attempts} attempts")

    async def _is_processed(self, event_id: str) -> bool:
        async with self._session_factory() as db:
            return await db.get(ProcessedEvent, event_id) is not None

    async def _record_dead(self, event_id: str, event_type: str, error: str) -> IngestResult:
        async with self._session_factory() as db:
            if await db.get(ProcessedEvent, event_id) is not None:
                return IngestResult("duplicate", event_id, event_type)
            db.add(
                ProcessedEvent(
                    event_id=event_id,
                    event_type=event_type,
                    outcome="dead",
                    error=error[:1000],
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return IngestResult("duplicate", event_id, event_type)
        return IngestResult("dead", event_id, event_type)


async def purge_processed_events(db: AsyncSession, older_than: timedelta | None = None) -> int:
    """Delete dedup rows older than the retention window. Returns the number removed."""
    older_than = older_than or timedelta(hours=settings.processed_event_retention_hours)
    cutoff: datetime = utcnow() - older_than
    result = await db.execute(delete(ProcessedEvent).where(ProcessedEvent.received_at < cutoff))
    removed = result.rowcount or 0
    if removed:
        logger.info("Purged %d processed webhook events older than %s", removed, cutoff)
    return removed
