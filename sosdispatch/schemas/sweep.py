"""Escalation sweep schemas."""

from datetime import datetime

from pydantic import BaseModel


class SweepResponse(BaseModel):
    started_at: datetime
    promoted: list[str]
    rejected: list[str]
    escalated: list[str]
    skipped: int
    errors: int

    model_config = {"from_attributes": True}
