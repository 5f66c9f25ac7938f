"""Geo service: haversine distance, region tags and the proximity index."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from sqlalchemy import select
from sqlalchemy.orm import Session

from sosdispatch.core.config import Settings
from sosdispatch.core.policies import PRIVATE_ALERT_ROLES, RESPONDER_ROLES, TERMINAL_STATUSES
from sosdispatch.models.alert import Alert
from sosdispatch.models.enums import AlertStatus, Category, Role, Urgency, Visibility
from sosdispatch.models.responder import Responder
from sosdispatch.models.safe_zone import SafeZone
from sosdispatch.services.alert_store import AlertStore

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.32
# Margin added to bounding boxes so float rounding never drops an edge row
_BOX_EPSILON_DEG = 1e-6

ACTIVE_STATUSES = frozenset(s for s in AlertStatus if s not in TERMINAL_STATUSES)


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two lat/lng points in kilometers."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def normalize_city(city: str | None) -> str | None:
    """Lower-cased, trimmed city name, or None if blank."""
    if city is None:
        return None
    cleaned = " ".join(city.split()).lower()
    return cleaned or None


def derive_region_tag(point: GeoPoint, city: str | None = None) -> str:
    """Region tag for an alert or responder.

    Uses the normalized city when the client resolved one, otherwise a
    0.1 degree grid cell (about 11 km).
    """
    normalized = normalize_city(city)
    if normalized:
        return normalized
    return f"grid:{point.latitude:.1f}:{point.longitude:.1f}"


def bounding_box(center: GeoPoint, radius_km: float) -> tuple[float, float, float | None, float | None]:
    """(min_lat, max_lat, min_lng, max_lng) enclosing the radius.

    Longitude bounds are None near the poles or across the antimeridian,
    where a simple box would be wrong; callers then filter by latitude only.
    """
    dlat = radius_km / KM_PER_DEGREE_LAT + _BOX_EPSILON_DEG
    min_lat = max(center.latitude - dlat, -90.0)
    max_lat = min(center.latitude + dlat, 90.0)
    cos_lat = math.cos(math.radians(center.latitude))
    if cos_lat < 0.01:
        return min_lat, max_lat, None, None
    dlng = radius_km / (KM_PER_DEGREE_LAT * cos_lat) + _BOX_EPSILON_DEG
    min_lng = center.longitude - dlng
    max_lng = center.longitude + dlng
    if min_lng < -180.0 or max_lng > 180.0:
        return min_lat, max_lat, None, None
    return min_lat, max_lat, min_lng, max_lng


def eligibility_failure(responder: Responder | None, alert: Alert, default_radius_km: float) -> str | None:
    """Why ``responder`` may not see or claim ``alert``; None when eligible.

    Shared by candidate selection and the claim arbiter so both apply the
    same duty, role, visibility and radius rules.
    """
    if responder is None:
        return "responder is not registered"
    if responder.role not in RESPONDER_ROLES:
        return "role cannot respond to alerts"
    if not responder.on_duty:
        return "responder is off duty"
    if responder.id == alert.requester_id:
        return "cannot respond to own alert"
    if alert.visibility == Visibility.PRIVATE and responder.role not in PRIVATE_ALERT_ROLES:
        return "private alerts are limited to staff"
    if not responder.has_location:
        return "responder location unknown"
    radius = responder.service_radius_km or default_radius_km
    dist = haversine_km(alert.latitude, alert.longitude, responder.latitude, responder.longitude)
    if dist > radius:
        return f"alert is {dist:.1f} km away, outside the {radius:.1f} km service radius"
    return None


@dataclass
class ProximityFilters:
    """Filters for ``GeospatialIndex.query``."""

    kinds: frozenset[str] = frozenset({"responder", "safe_zone"})
    on_duty_only: bool = True
    roles: frozenset[Role] | None = None
    category: Category | None = None
    # Only responders whose own service radius also covers the point
    within_service_radius: bool = False
    exclude_ids: frozenset[str] = frozenset()


@dataclass
class AlertFilters:
    """Filters for ``GeospatialIndex.alerts_near`` (listNearbyAlerts)."""

    categories: frozenset[Category] | None = None
    urgencies: frozenset[Urgency] | None = None
    statuses: frozenset[AlertStatus] = field(default_factory=lambda: ACTIVE_STATUSES)
    public_only: bool = False


@dataclass
class Candidate:
    """A responder or safe zone found near a point."""

    kind: str  # responder | safe_zone
    id: str
    distance_km: float
    latitude: float
    longitude: float
    name: str | None = None
    role: Role | None = None
    tie_breaker: datetime | None = None


@dataclass
class LocationUpdateResult:
    responder: Responder
    accepted: bool


class GeospatialIndex:
    """Proximity lookups over responders, safe zones and alerts.

    A bounding box narrows rows in SQL, exact haversine distance does the
    final filter and sort. Responder positions are eventually consistent:
    they shape who gets notified, never who may claim.
    """

    def __init__(self, config: Settings, store: AlertStore | None = None) -> None:
        self._config = config
        self._store = store or AlertStore()

    # ---------- responders / safe zones ----------

    def query(
        self,
        db: Session,
        point: GeoPoint,
        radius_km: float,
        filters: ProximityFilters | None = None,
    ) -> list[Candidate]:
        """Candidates within ``radius_km`` sorted by distance, then earliest update."""
        filters = filters or ProximityFilters()
        min_lat, max_lat, min_lng, max_lng = bounding_box(point, radius_km)
        candidates: list[Candidate] = []

        if "responder" in filters.kinds:
            candidates.extend(self._responder_candidates(db, point, radius_km, filters, (min_lat, max_lat, min_lng, max_lng)))
        if "safe_zone" in filters.kinds:
            candidates.extend(self._safe_zone_candidates(db, point, radius_km, (min_lat, max_lat, min_lng, max_lng)))

        candidates.sort(key=_candidate_sort_key)
        return candidates

    def _responder_candidates(self, db, point, radius_km, filters, box) -> list[Candidate]:
        min_lat, max_lat, min_lng, max_lng = box
        conditions = [
            Responder.latitude.is_not(None),
            Responder.longitude.is_not(None),
            Responder.latitude >= min_lat,
            Responder.latitude <= max_lat,
        ]
        if min_lng is not None and max_lng is not None:
            conditions.extend([Responder.longitude >= min_lng, Responder.longitude <= max_lng])
        if filters.on_duty_only:
            conditions.append(Responder.on_duty.is_(True))
        roles = filters.roles if filters.roles is not None else RESPONDER_ROLES
        conditions.append(Responder.role.in_(list(roles)))

        result: list[Candidate] = []
        for r in db.execute(select(Responder).where(*conditions)).scalars().all():
            if r.id in filters.exclude_ids:
                continue
            if filters.category is not None and r.preferred_categories and filters.category.value not in r.preferred_categories:
                continue
            dist = haversine_km(point.latitude, point.longitude, r.latitude, r.longitude)
            if dist > radius_km:
                continue
            if filters.within_service_radius and dist > (r.service_radius_km or self._config.default_service_radius_km):
                continue
            result.append(
                Candidate(
                    kind="responder",
                    id=r.id,
                    distance_km=round(dist, 3),
                    latitude=r.latitude,
                    longitude=r.longitude,
                    role=r.role,
                    tie_breaker=r.last_location_update_at or r.on_duty_since,
                )
            )
        return result

    def _safe_zone_candidates(self, db, point, radius_km, box) -> list[Candidate]:
        min_lat, max_lat, min_lng, max_lng = box
        conditions = [
            SafeZone.verified.is_(True),
            SafeZone.latitude >= min_lat,
            SafeZone.latitude <= max_lat,
        ]
        if min_lng is not None and max_lng is not None:
            conditions.extend([SafeZone.longitude >= min_lng, SafeZone.longitude <= max_lng])

        result: list[Candidate] = []
        for z in db.execute(select(SafeZone).where(*conditions)).scalars().all():
            dist = haversine_km(point.latitude, point.longitude, z.latitude, z.longitude)
            if dist > radius_km:
                continue
            result.append(
                Candidate(
                    kind="safe_zone",
                    id=str(z.id),
                    distance_km=round(dist, 3),
                    latitude=z.latitude,
                    longitude=z.longitude,
                    name=z.name,
                    tie_breaker=z.created_at,
                )
            )
        return result

    def eligible_responders(self, db: Session, alert: Alert) -> list[Candidate]:
        """On-duty responders who may see and claim ``alert``, nearest first."""
        point = GeoPoint(alert.latitude, alert.longitude)
        roles = PRIVATE_ALERT_ROLES if alert.visibility == Visibility.PRIVATE else RESPONDER_ROLES
        filters = ProximityFilters(
            kinds=frozenset({"responder"}),
            roles=frozenset(roles),
            category=alert.category,
            within_service_radius=True,
            exclude_ids=frozenset({alert.requester_id}),
        )
        return self.query(db, point, self._config.dispatch_radius_km, filters)

    def nearest_safe_zone(self, db: Session, point: GeoPoint, radius_km: float) -> Candidate | None:
        found = self.query(db, point, radius_km, ProximityFilters(kinds=frozenset({"safe_zone"})))
        return found[0] if found else None

    # ---------- alerts ----------

    def alerts_near(
        self,
        db: Session,
        point: GeoPoint,
        radius_km: float,
        filters: AlertFilters | None = None,
    ) -> list[tuple[Alert, float]]:
        """Alerts within ``radius_km`` of ``point`` with their distance, nearest first."""
        filters = filters or AlertFilters()
        min_lat, max_lat, min_lng, max_lng = bounding_box(point, radius_km)
        rows = self._store.list_in_box(db, min_lat, max_lat, min_lng, max_lng, filters.statuses)

        found: list[tuple[Alert, float]] = []
        for alert in rows:
            if filters.categories and alert.category not in filters.categories:
                continue
            if filters.urgencies and alert.urgency not in filters.urgencies:
                continue
            if filters.public_only and alert.visibility != Visibility.PUBLIC:
                continue
            dist = haversine_km(point.latitude, point.longitude, alert.latitude, alert.longitude)
            if dist <= radius_km:
                found.append((alert, round(dist, 3)))
        found.sort(key=lambda pair: (pair[1], pair[0].created_at))
        return found

    # ---------- location updates ----------

    def update_location(self, db: Session, responder: Responder, point: GeoPoint, now: datetime) -> LocationUpdateResult:
        """Store a responder position unless it arrives faster than the sampling rate."""
        min_interval = timedelta(seconds=self._config.location_update_min_interval_seconds)
        last = responder.last_location_update_at
        if last is not None and now - last < min_interval:
            logger.debug("Location update for %s throttled", responder.id)
            return LocationUpdateResult(responder=responder, accepted=False)

        responder.latitude = point.latitude
        responder.longitude = point.longitude
        responder.region_tag = derive_region_tag(point)
        responder.last_location_update_at = now
        db.commit()
        db.refresh(responder)
        return LocationUpdateResult(responder=responder, accepted=True)


def _candidate_sort_key(c: Candidate):
    # None tie-breakers sort last
    return (c.distance_km, c.tie_breaker is None, c.tie_breaker or datetime.max)

