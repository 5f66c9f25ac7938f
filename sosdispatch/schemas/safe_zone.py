"""Safe zone schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class SafeZoneCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    kind: str = Field(default="other", pattern="^(hospital|police|shelter|fire_station|other)$")
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    verified: bool = True


class SafeZoneResponse(BaseModel):
    id: int
    name: str
    kind: str
    latitude: float
    longitude: float
    verified: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class NearbySafeZoneResponse(BaseModel):
    id: int
    name: str | None
    distance_km: float
    latitude: float
    longitude: float
