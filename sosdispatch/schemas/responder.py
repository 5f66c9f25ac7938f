"""Responder duty and location schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from sosdispatch.models.enums import Category, Role


class ResponderUpdate(BaseModel):
    on_duty: bool | None = None
    service_radius_km: float | None = Field(default=None, gt=0, le=100)
    preferred_categories: list[Category] | None = None


class LocationUpdate(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class ResponderResponse(BaseModel):
    id: str
    role: Role
    on_duty: bool
    on_duty_since: datetime | None
    latitude: float | None
    longitude: float | None
    region_tag: str | None
    service_radius_km: float
    preferred_categories: list[str] = []
    last_location_update_at: datetime | None

    model_config = {"from_attributes": True}


class LocationUpdateResponse(BaseModel):
    accepted: bool  # False when the update came faster than the sampling rate
    responder: ResponderResponse


class NearbyResponderResponse(BaseModel):
    responder_id: str
    role: Role | None
    distance_km: float
    latitude: float
    longitude: float
