"""Audit service: append-only log of entitlement-changing actions.

Entries are added to the caller's session, so they commit or roll back
together with the state change they describe.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_entry import AuditEntry
from app.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditContext:
    """Who triggered a change and from where."""

    actor: str = "user"  # user, webhook, reconciler, operator
    ip_address: str | None = None
    user_agent: str | None = None
    event_id: str | None = None


RECONCILER_CONTEXT = AuditContext(actor="reconciler", user_agent="reconciler")


async def record(
    db: AsyncSession,
    user: User | None,
    action: str,
    details: dict[str, Any] | None = None,
    context: AuditContext | None = None,
    user_id: uuid.UUID | None = None,
) -> AuditEntry:
    """Append an audit entry to the current transaction."""
    context = context or AuditContext()
    payload = dict(details or {})
    if context.event_id:
        payload.setdefault("eventId", context.event_id)

    entry = AuditEntry(
        user_id=user.id if user is not None else user_id,
        subject=user.email if user is not None else None,
        action=action,
        details=payload,
        actor=context.actor,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    db.add(entry)
    await db.flush()
    logger.debug("Audit %s for user %s", action, entry.user_id)
    return entry


async def list_entries(
    db: AsyncSession,
    user_id: uuid.UUID | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    action: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[AuditEntry]:
    """Query entries by user and/or time range, newest first."""
    query = select(AuditEntry)
    if user_id is not None:
        query = query.where(AuditEntry.user_id == user_id)
    if since is not None:
        query = query.where(AuditEntry.created_at >= since)
    if until is not None:
        query = query.where(AuditEntry.created_at < until)
    if action is not None:
        query = query.where(AuditEntry.action == action)
    query = query.order_by(AuditEntry.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def redact_user(db: AsyncSession, user_id: uuid.UUID, erasure_token: str) -> int:
    """Replace personal identifiers on a user's entries; the rows themselves stay."""
    result = await db.execute(
        update(AuditEntry)
        .where(AuditEntry.user_id == user_id)
        .values(subject=erasure_token, ip_address=None, user_agent=None)
    )
    return result.rowcount or 0
