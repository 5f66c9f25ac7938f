"""Alerts API: raise, browse, claim, cancel and advance SOS alerts."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from sosdispatch.core.deps import get_current_principal, get_dispatch, http_error
from sosdispatch.core.errors import DispatchError
from sosdispatch.core.security import Principal
from sosdispatch.db.session import get_db
from sosdispatch.models.enums import AlertStatus, Category, Urgency
from sosdispatch.schemas.alert import (
    AlertCreate,
    AlertResponse,
    CancelResponse,
    ClaimResponse,
    FeedbackCreate,
    FeedbackResponse,
    NearbyAlertResponse,
    StatusUpdate,
)
from sosdispatch.schemas.audit import AuditRecordResponse
from sosdispatch.services.claim_arbiter import ClaimAttempt, ClaimOutcome
from sosdispatch.services.dispatch_service import DispatchService
from sosdispatch.services.geo_service import ACTIVE_STATUSES, AlertFilters, GeoPoint

router = APIRouter(prefix="/alerts", tags=["alerts"])


def _claim_response(attempt: ClaimAttempt) -> ClaimResponse:
    return ClaimResponse(
        alert_id=attempt.alert_id,
        responder_id=attempt.responder_id,
        attempted_at=attempt.attempted_at,
        outcome=attempt.outcome.value,
        reason=attempt.reason,
        alert=AlertResponse.model_validate(attempt.alert) if attempt.alert is not None else None,
    )


@router.post("", response_model=AlertResponse)
def create_alert(
    data: AlertCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Raise an SOS. The cancellation window starts now; nearby responders are notified."""
    try:
        return dispatch.create_alert(
            db,
            principal,
            data.category,
            data.urgency,
            data.description,
            GeoPoint(data.location.latitude, data.location.longitude),
            visibility=data.visibility,
            media_refs=data.media_refs,
            city=data.city,
            cancel_window_seconds=data.cancel_window_seconds,
        )
    except DispatchError as e:
        raise http_error(e)


# ---- collection routes (before {alert_id} path param) ----


@router.get("/nearby", response_model=list[NearbyAlertResponse])
def list_nearby(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(default=5.0, ge=0, le=100),
    categories: list[Category] | None = Query(default=None),
    urgencies: list[Urgency] | None = Query(default=None),
    statuses: list[AlertStatus] | None = Query(default=None, description="Defaults to every non-terminal status"),
    public_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Alerts around a point, nearest first."""
    filters = AlertFilters(
        categories=frozenset(categories) if categories else None,
        urgencies=frozenset(urgencies) if urgencies else None,
        statuses=frozenset(statuses) if statuses else ACTIVE_STATUSES,
        public_only=public_only,
    )
    try:
        found = dispatch.list_nearby_alerts(db, GeoPoint(latitude, longitude), radius_km, filters, viewer=principal)
    except DispatchError as e:
        raise http_error(e)
    return [NearbyAlertResponse(alert=AlertResponse.model_validate(a), distance_km=d) for a, d in found]


@router.get("/mine", response_model=list[AlertResponse])
def list_mine(
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Alerts the caller raised, newest first."""
    return dispatch.list_my_alerts(db, principal, limit)


@router.get("/claimed", response_model=list[AlertResponse])
def list_claimed(
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Alerts the caller claimed, most recent claim first."""
    return dispatch.list_claimed_alerts(db, principal, limit)


# ---- single alert ----


@router.get("/{alert_id}", response_model=AlertResponse)
def get_alert(
    alert_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    try:
        return dispatch.get_alert(db, alert_id, principal)
    except DispatchError as e:
        raise http_error(e)


@router.post("/{alert_id}/cancel", response_model=CancelResponse)
def cancel_alert(
    alert_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Requester cancels. Outcome is OK or TOO_LATE; anyone but the requester gets TOO_LATE."""
    try:
        result = dispatch.cancel_alert(db, alert_id, principal)
    except DispatchError as e:
        raise http_error(e)
    return CancelResponse(
        alert_id=result.alert_id,
        outcome=result.outcome.value,
        reason=result.reason,
        alert=AlertResponse.model_validate(result.alert),
    )


@router.post("/{alert_id}/claim", response_model=ClaimResponse)
def claim_alert(
    alert_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Responder claims a dispatched alert. Exactly one claim wins."""
    try:
        attempt = dispatch.claim_alert(db, alert_id, principal)
    except DispatchError as e:
        raise http_error(e)
    if attempt.outcome == ClaimOutcome.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return _claim_response(attempt)


@router.post("/{alert_id}/status", response_model=AlertResponse)
def update_status(
    alert_id: str,
    data: StatusUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Claimant or admin moves the alert forward (EN_ROUTE, ARRIVED, RESOLVED, ESCALATED)."""
    try:
        return dispatch.advance_status(db, alert_id, principal, data.target_status, data.expected_version)
    except DispatchError as e:
        raise http_error(e)


@router.get("/{alert_id}/audit", response_model=list[AuditRecordResponse])
def get_audit(
    alert_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Transition history for moderation and disputes."""
    try:
        return dispatch.audit_trail(db, alert_id, principal)
    except DispatchError as e:
        raise http_error(e)


@router.post("/{alert_id}/feedback", response_model=FeedbackResponse)
def leave_feedback(
    alert_id: str,
    data: FeedbackCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    try:
        return dispatch.submit_feedback(db, alert_id, principal, data.rating, data.comment)
    except DispatchError as e:
        raise http_error(e)
