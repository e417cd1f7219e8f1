"""SQLAlchemy models for the commerce core.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.audit_entry import AuditEntry
from app.models.owned_program import OwnedProgram
from app.models.processed_event import ProcessedEvent
from app.models.purchase import Purchase
from app.models.subscription import Subscription
from app.models.user import User

__all__ = [
    "AuditEntry",
    "OwnedProgram",
    "ProcessedEvent",
    "Purchase",
    "Subscription",
    "User",
]
