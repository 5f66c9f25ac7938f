"""Geospatial index tests."""

import pytest

from conftest import DELHI, dispatched_alert, make_responder
from sosdispatch.core.security import Principal
from sosdispatch.core.errors import NotEligibleError
from sosdispatch.models.enums import AlertStatus, Category, Role, Urgency, Visibility
from sosdispatch.services.geo_service import (
    AlertFilters,
    GeoPoint,
    ProximityFilters,
    bounding_box,
    derive_region_tag,
    haversine_km,
)


def test_haversine_same_point_is_zero():
    assert haversine_km(28.6139, 77.2090, 28.6139, 77.2090) == 0.0


def test_haversine_known_distances():
    near = haversine_km(28.6139, 77.2090, 28.62, 77.21)
    far = haversine_km(28.6139, 77.2090, 29.0, 77.0)
    assert 0.5 < near < 1.0
    assert 40 < far < 50


def test_region_tag_prefers_city_then_grid():
    assert derive_region_tag(DELHI, "  New   Delhi ") == "new delhi"
    assert derive_region_tag(DELHI) == "grid:28.6:77.2"
    assert derive_region_tag(DELHI, "   ") == "grid:28.6:77.2"


def test_bounding_box_contains_radius():
    min_lat, max_lat, min_lng, max_lng = bounding_box(DELHI, 5.0)
    assert min_lat < 28.6139 - 0.04 and max_lat > 28.6139 + 0.04
    assert min_lng < 77.2090 - 0.05 and max_lng > 77.2090 + 0.05


def test_bounding_box_drops_longitude_near_pole():
    _, max_lat, min_lng, max_lng = bounding_box(GeoPoint(89.99, 10.0), 50.0)
    assert max_lat == 90.0
    assert min_lng is None and max_lng is None


def test_nearby_alerts_include_close_and_exclude_far(service, db):
    close = dispatched_alert(service, db, location=GeoPoint(28.62, 77.21))
    far = dispatched_alert(service, db, location=GeoPoint(29.0, 77.0))

    found = service.list_nearby_alerts(db, DELHI, 5.0)
    ids = [a.id for a, _ in found]
    assert close.id in ids
    assert far.id not in ids


def test_new_alert_is_listed_at_its_own_point(service, db):
    alert = dispatched_alert(service, db)
    found = service.list_nearby_alerts(db, DELHI, 0.0)
    assert [(a.id, d) for a, d in found] == [(alert.id, 0.0)]


def test_nearby_alert_filters(service, db):
    fire = dispatched_alert(service, db, category=Category.FIRE, urgency=Urgency.LOW)
    medical = dispatched_alert(service, db, category=Category.MEDICAL)

    only_fire = service.geo.alerts_near(db, DELHI, 5.0, AlertFilters(categories=frozenset({Category.FIRE})))
    assert [a.id for a, _ in only_fire] == [fire.id]

    high = service.geo.alerts_near(db, DELHI, 5.0, AlertFilters(urgencies=frozenset({Urgency.HIGH})))
    assert [a.id for a, _ in high] == [medical.id]

    claimed_only = service.geo.alerts_near(db, DELHI, 5.0, AlertFilters(statuses=frozenset({AlertStatus.CLAIMED})))
    assert claimed_only == []


def test_private_alerts_hidden_from_public_viewers(service, db):
    alert = dispatched_alert(service, db, visibility=Visibility.PRIVATE)
    stranger = Principal("someone", Role.USER)
    employee = Principal("emp-1", Role.EMPLOYEE)

    assert service.list_nearby_alerts(db, DELHI, 5.0, viewer=stranger) == []
    assert [a.id for a, _ in service.list_nearby_alerts(db, DELHI, 5.0, viewer=employee)] == [alert.id]


def test_query_sorts_by_distance_then_earliest_update(service, db, clock):
    make_responder(service, db, "far", point=GeoPoint(28.64, 77.23))
    clock.advance(1)
    make_responder(service, db, "tie-early", point=GeoPoint(28.62, 77.21))
    clock.advance(1)
    make_responder(service, db, "tie-late", point=GeoPoint(28.62, 77.21))

    found = service.geo.query(db, DELHI, 10.0, ProximityFilters(kinds=frozenset({"responder"})))
    assert [c.id for c in found] == ["tie-early", "tie-late", "far"]
    assert found[0].distance_km <= found[-1].distance_km


def test_query_skips_off_duty_and_filters_category(service, db):
    make_responder(service, db, "medic")
    service.update_responder(db, Principal("medic", Role.VOLUNTEER), preferred_categories=[Category.MEDICAL])
    resting = make_responder(service, db, "resting")
    service.update_responder(db, resting, on_duty=False)

    fire = service.geo.query(
        db, DELHI, 5.0, ProximityFilters(kinds=frozenset({"responder"}), category=Category.FIRE)
    )
    medical = service.geo.query(
        db, DELHI, 5.0, ProximityFilters(kinds=frozenset({"responder"}), category=Category.MEDICAL)
    )
    assert [c.id for c in fire] == []
    assert [c.id for c in medical] == ["medic"]


def test_safe_zones_only_verified(service, db):
    admin = Principal("admin-1", Role.ADMIN)
    service.add_safe_zone(db, admin, "AIIMS", "hospital", GeoPoint(28.5672, 77.2100))
    service.add_safe_zone(db, admin, "Rumoured shelter", "shelter", GeoPoint(28.6140, 77.2091), verified=False)

    zones = service.nearby_safe_zones(db, DELHI, 10.0)
    assert [z.name for z in zones] == ["AIIMS"]
    assert service.geo.nearest_safe_zone(db, DELHI, 10.0).name == "AIIMS"
    assert service.geo.nearest_safe_zone(db, DELHI, 1.0) is None


def test_location_updates_are_throttled(service, db, clock, config):
    principal = make_responder(service, db, "vol-1")

    result = service.update_location(db, principal, GeoPoint(28.62, 77.21))
    assert result.accepted is False
    assert result.responder.latitude == pytest.approx(DELHI.latitude)

    clock.advance(config.location_update_min_interval_seconds)
    result = service.update_location(db, principal, GeoPoint(28.62, 77.21))
    assert result.accepted is True
    assert result.responder.latitude == pytest.approx(28.62)


def test_users_cannot_register_as_responders(service, db):
    with pytest.raises(NotEligibleError):
        service.update_responder(db, Principal("plain", Role.USER), on_duty=True)
