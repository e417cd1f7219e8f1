"""Shared API dependencies: single import point for all routers.

Re-exports database session, authentication and entitlement dependencies so
that router modules can import everything they need from one place::

    from app.api.deps import get_db, get_current_active_user
"""

from fastapi import Request

from app.auth.dependencies import (
    get_current_active_user,
    get_current_admin,
    get_current_user,
)
from app.billing.dependencies import (
    active_subscription_required,
    program_ownership_required,
    require_commerce_configured,
)
from app.database import get_db, get_session_factory
from app.services.audit_service import AuditContext

__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_user",
    "get_current_active_user",
    "get_current_admin",
    "active_subscription_required",
    "program_ownership_required",
    "require_commerce_configured",
    "request_audit_context",
]


def request_audit_context(request: Request) -> AuditContext:
    """Audit context for a user-initiated request."""
    return AuditContext(
        actor="user",
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
