"""SQLAlchemy models."""

from __future__ import annotations

from sosdispatch.models.alert import Alert
from sosdispatch.models.audit_record import AuditRecord
from sosdispatch.models.feedback import Feedback
from sosdispatch.models.notification import Notification
from sosdispatch.models.responder import Responder
from sosdispatch.models.safe_zone import SafeZone

__all__ = [
    "Alert",
    "AuditRecord",
    "Feedback",
    "Notification",
    "Responder",
    "SafeZone",
]
