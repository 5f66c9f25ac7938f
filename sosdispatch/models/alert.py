"""Alert model."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Enum, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from sosdispatch.db.base import Base, UTCDateTime
from sosdispatch.models.enums import AlertStatus, Category, Urgency, Visibility


def _new_alert_id() -> str:
    return str(uuid.uuid4())


class Alert(Base):
    """Emergency alert raised by a requester, with its full lifecycle state.

    Every committed mutation bumps ``version``; writers must supply the
    version they read.
    """

    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_alert_id)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category: Mapped[Category] = mapped_column(Enum(Category, native_enum=False, length=32), nullable=False)
    urgency: Mapped[Urgency] = mapped_column(Enum(Urgency, native_enum=False, length=10), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    region_tag: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    visibility: Mapped[Visibility] = mapped_column(
        Enum(Visibility, native_enum=False, length=10), nullable=False, default=Visibility.PUBLIC
    )
    status: Mapped[AlertStatus] = mapped_column(
        Enum(AlertStatus, native_enum=False, length=20), nullable=False, default=AlertStatus.CREATED, index=True
    )
    claimed_by: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status_changed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    cancel_window_expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    media_refs: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return f"<Alert {self.id} {self.status.value} v{self.version}>"
