"""Responder duty, location and proximity API."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from sosdispatch.core.deps import get_current_principal, get_dispatch, http_error
from sosdispatch.core.errors import DispatchError
from sosdispatch.core.security import Principal
from sosdispatch.db.session import get_db
from sosdispatch.models.enums import Category
from sosdispatch.schemas.responder import (
    LocationUpdate,
    LocationUpdateResponse,
    NearbyResponderResponse,
    ResponderResponse,
    ResponderUpdate,
)
from sosdispatch.services.dispatch_service import DispatchService
from sosdispatch.services.geo_service import GeoPoint

router = APIRouter(prefix="/responders", tags=["responders"])


@router.get("/me", response_model=ResponderResponse)
def get_me(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    responder = dispatch.get_responder(db, principal.principal_id)
    if not responder:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not registered as a responder")
    return responder


@router.put("/me", response_model=ResponderResponse)
def update_me(
    data: ResponderUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Go on/off duty, set service radius and preferred categories."""
    try:
        return dispatch.update_responder(
            db,
            principal,
            on_duty=data.on_duty,
            service_radius_km=data.service_radius_km,
            preferred_categories=data.preferred_categories,
        )
    except DispatchError as e:
        raise http_error(e)


@router.post("/me/location", response_model=LocationUpdateResponse)
def update_location(
    data: LocationUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Report current position. Updates faster than the sampling rate come back with accepted=false."""
    try:
        result = dispatch.update_location(db, principal, GeoPoint(data.latitude, data.longitude))
    except DispatchError as e:
        raise http_error(e)
    return LocationUpdateResponse(
        accepted=result.accepted,
        responder=ResponderResponse.model_validate(result.responder),
    )


@router.get("/nearby", response_model=list[NearbyResponderResponse])
def list_nearby(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(default=5.0, ge=0, le=100),
    category: Category | None = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """On-duty responders around a point (staff only), nearest first."""
    try:
        found = dispatch.nearby_responders(db, GeoPoint(latitude, longitude), radius_km, principal, category)
    except DispatchError as e:
        raise http_error(e)
    return [
        NearbyResponderResponse(
            responder_id=c.id,
            role=c.role,
            distance_km=c.distance_km,
            latitude=c.latitude,
            longitude=c.longitude,
        )
        for c in found
    ]
