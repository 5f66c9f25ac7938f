"""Responder duty and location row."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, Enum, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from sosdispatch.db.base import Base, UTCDateTime
from sosdispatch.models.enums import Role


class Responder(Base):
    """Volunteer, employee or admin who can be dispatched to alerts."""

    __tablename__ = "responders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    role: Mapped[Role] = mapped_column(Enum(Role, native_enum=False, length=20), nullable=False)
    on_duty: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    on_duty_since: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    region_tag: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    service_radius_km: Mapped[float] = mapped_column(Float, nullable=False)
    preferred_categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    last_location_update_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None
