"""Notification inbox schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from sosdispatch.models.enums import NotificationKind


class NotificationResponse(BaseModel):
    id: int
    event_id: str
    alert_id: str
    kind: NotificationKind
    payload: dict[str, Any]
    alert_version: int
    created_at: datetime
    read_at: datetime | None

    model_config = {"from_attributes": True}
