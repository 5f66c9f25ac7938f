"""Audit record model - one row per committed alert transition."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from sosdispatch.db.base import Base, UTCDateTime
from sosdispatch.models.enums import AlertStatus


class AuditRecord(Base):
    """Append-only transition record. ``sequence`` equals the alert's post-write version."""

    __tablename__ = "audit_records"
    __table_args__ = (UniqueConstraint("alert_id", "sequence", name="uq_audit_alert_sequence"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    alert_id: Mapped[str] = mapped_column(ForeignKey("alerts.id"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)
    from_status: Mapped[AlertStatus | None] = mapped_column(
        Enum(AlertStatus, native_enum=False, length=20), nullable=True
    )
    to_status: Mapped[AlertStatus] = mapped_column(Enum(AlertStatus, native_enum=False, length=20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
