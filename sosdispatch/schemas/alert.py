"""Alert schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from sosdispatch.models.enums import AlertStatus, Category, Urgency, Visibility


class Location(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class AlertCreate(BaseModel):
    category: Category
    urgency: Urgency
    description: str = Field(default="", max_length=2000)
    location: Location
    visibility: Visibility = Visibility.PUBLIC
    media_refs: list[str] = Field(default_factory=list, max_length=5, description="Opaque media URLs from upload storage")
    city: str | None = Field(default=None, max_length=100, description="City resolved by the client; used as region tag")
    cancel_window_seconds: float | None = Field(default=None, ge=0, description="Override the default cancellation window")


class StatusUpdate(BaseModel):
    """Move an alert along its lifecycle. ``expected_version`` is the version the client last saw."""

    target_status: AlertStatus
    expected_version: int = Field(..., ge=1)


class AlertResponse(BaseModel):
    id: str
    requester_id: str
    category: Category
    urgency: Urgency
    description: str
    latitude: float
    longitude: float
    region_tag: str
    visibility: Visibility
    status: AlertStatus
    claimed_by: str | None
    claimed_at: datetime | None
    created_at: datetime
    status_changed_at: datetime
    cancel_window_expires_at: datetime
    escalated_at: datetime | None
    resolved_at: datetime | None
    media_refs: list[str] = []
    version: int

    model_config = {"from_attributes": True}


class NearbyAlertResponse(BaseModel):
    alert: AlertResponse
    distance_km: float


class ClaimResponse(BaseModel):
    alert_id: str
    responder_id: str
    attempted_at: datetime
    outcome: str  # OK | ALREADY_CLAIMED | NOT_ELIGIBLE | NOT_FOUND
    reason: str | None = None
    alert: AlertResponse | None = None

    model_config = {"from_attributes": True}


class CancelResponse(BaseModel):
    alert_id: str
    outcome: str  # OK | TOO_LATE
    reason: str | None = None
    alert: AlertResponse

    model_config = {"from_attributes": True}


class FeedbackCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str | None = Field(default=None, max_length=1000)


class FeedbackResponse(BaseModel):
    id: int
    alert_id: str
    requester_id: str
    rating: int
    comment: str | None
    created_at: datetime

    model_config = {"from_attributes": True}
