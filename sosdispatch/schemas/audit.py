"""Audit trail schemas."""

from datetime import datetime

from pydantic import BaseModel

from sosdispatch.models.enums import AlertStatus


class AuditRecordResponse(BaseModel):
    alert_id: str
    sequence: int
    actor_id: str
    actor_role: str
    from_status: AlertStatus | None
    to_status: AlertStatus
    timestamp: datetime
    reason: str | None

    model_config = {"from_attributes": True}
