"""Safe zones API."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from sosdispatch.core.deps import get_current_principal, get_dispatch, http_error, require_roles
from sosdispatch.core.errors import DispatchError
from sosdispatch.core.security import Principal
from sosdispatch.db.session import get_db
from sosdispatch.models.enums import Role
from sosdispatch.schemas.safe_zone import NearbySafeZoneResponse, SafeZoneCreate, SafeZoneResponse
from sosdispatch.services.dispatch_service import DispatchService
from sosdispatch.services.geo_service import GeoPoint

router = APIRouter(prefix="/safe-zones", tags=["safe-zones"])


@router.post("", response_model=SafeZoneResponse)
def add_safe_zone(
    data: SafeZoneCreate,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_roles(Role.ADMIN)),
    dispatch: DispatchService = Depends(get_dispatch),
):
    try:
        return dispatch.add_safe_zone(
            db, admin, data.name, data.kind, GeoPoint(data.latitude, data.longitude), verified=data.verified
        )
    except DispatchError as e:
        raise http_error(e)


@router.get("/nearby", response_model=list[NearbySafeZoneResponse])
def list_nearby(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(default=5.0, ge=0, le=100),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Verified safe zones around a point, nearest first."""
    try:
        found = dispatch.nearby_safe_zones(db, GeoPoint(latitude, longitude), radius_km, limit)
    except DispatchError as e:
        raise http_error(e)
    return [
        NearbySafeZoneResponse(
            id=int(c.id), name=c.name, distance_km=c.distance_km, latitude=c.latitude, longitude=c.longitude
        )
        for c in found
    ]
