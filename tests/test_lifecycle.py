"""Lifecycle engine tests: edges, actors, versions and audit records."""

from datetime import timedelta

import pytest

from conftest import DELHI, dispatched_alert, make_responder
from sosdispatch.core.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from sosdispatch.core.security import Principal
from sosdispatch.models.enums import AlertStatus, Category, Role, Urgency
from sosdispatch.services.claim_arbiter import ClaimOutcome
from sosdispatch.services.lifecycle import EDGES, allowed_targets

REQUESTER = Principal("req-1", Role.USER)
ADMIN = Principal("admin-1", Role.ADMIN)

# Earlier position in the happy path; used to check status never goes back
ORDER = [
    AlertStatus.CREATED,
    AlertStatus.DISPATCHED,
    AlertStatus.CLAIMED,
    AlertStatus.EN_ROUTE,
    AlertStatus.ARRIVED,
    AlertStatus.RESOLVED,
]


def _claimed(service, db):
    responder = make_responder(service, db, "vol-1")
    alert = dispatched_alert(service, db)
    attempt = service.claim_alert(db, alert.id, responder)
    assert attempt.outcome == ClaimOutcome.OK
    return attempt.alert, responder


def test_create_starts_at_version_one_with_audit(service, db, clock, config):
    alert = service.create_alert(db, REQUESTER, Category.FIRE, Urgency.MEDIUM, "Kitchen fire", DELHI)

    assert alert.status == AlertStatus.CREATED
    assert alert.version == 1
    assert alert.cancel_window_expires_at == clock() + timedelta(seconds=config.cancel_window_seconds)
    records = service.audit.list(db, alert.id)
    assert [(r.sequence, r.from_status, r.to_status) for r in records] == [(1, None, AlertStatus.CREATED)]


def test_zero_window_dispatches_immediately(service, db):
    alert = dispatched_alert(service, db)
    assert alert.status == AlertStatus.DISPATCHED
    assert alert.version == 2
    last = service.audit.list(db, alert.id)[-1]
    assert last.actor_role == Role.SYSTEM.value
    assert last.reason == "cancel_window_expired"


def test_create_rejects_bad_input(service, db, config):
    with pytest.raises(ValidationError):
        service.create_alert(db, REQUESTER, Category.OTHER, Urgency.LOW, "x" * (config.max_description_length + 1), DELHI)
    with pytest.raises(ValidationError):
        service.create_alert(
            db, REQUESTER, Category.OTHER, Urgency.LOW, "", DELHI,
            cancel_window_seconds=config.max_cancel_window_seconds + 1,
        )
    with pytest.raises(ValidationError):
        service.create_alert(
            db, REQUESTER, Category.OTHER, Urgency.LOW, "", DELHI,
            media_refs=[f"https://cdn.example/{i}.jpg" for i in range(config.max_media_refs + 1)],
        )


def test_claimant_walks_alert_to_resolution(service, db):
    alert, responder = _claimed(service, db)

    for target in (AlertStatus.EN_ROUTE, AlertStatus.ARRIVED, AlertStatus.RESOLVED):
        alert = service.advance_status(db, alert.id, responder, target, alert.version)
        assert alert.status == target

    assert alert.resolved_at is not None
    records = service.audit.list(db, alert.id)
    assert [r.sequence for r in records] == list(range(1, alert.version + 1))
    statuses = [r.to_status for r in records]
    assert statuses == ORDER
    positions = [ORDER.index(s) for s in statuses]
    assert positions == sorted(positions)


def test_stale_version_is_a_conflict(service, db):
    alert, responder = _claimed(service, db)
    with pytest.raises(ConflictError) as exc_info:
        service.advance_status(db, alert.id, responder, AlertStatus.EN_ROUTE, alert.version - 1)
    assert exc_info.value.retryable is True


def test_skipping_a_step_is_invalid(service, db):
    alert, responder = _claimed(service, db)
    with pytest.raises(InvalidTransitionError):
        service.advance_status(db, alert.id, responder, AlertStatus.RESOLVED, alert.version)


def test_only_claimant_or_admin_advance(service, db):
    alert, _ = _claimed(service, db)
    other = make_responder(service, db, "vol-2")

    with pytest.raises(InvalidTransitionError):
        service.advance_status(db, alert.id, other, AlertStatus.EN_ROUTE, alert.version)
    with pytest.raises(InvalidTransitionError):
        service.advance_status(db, alert.id, REQUESTER, AlertStatus.EN_ROUTE, alert.version)

    moved = service.advance_status(db, alert.id, ADMIN, AlertStatus.EN_ROUTE, alert.version)
    assert moved.status == AlertStatus.EN_ROUTE


def test_claim_status_cannot_be_set_directly(service, db):
    alert = dispatched_alert(service, db)
    with pytest.raises(InvalidTransitionError):
        service.advance_status(db, alert.id, ADMIN, AlertStatus.CLAIMED, alert.version)


def test_claimant_can_escalate_and_admin_resolves(service, db):
    alert, responder = _claimed(service, db)
    alert = service.advance_status(db, alert.id, responder, AlertStatus.ESCALATED, alert.version)
    assert alert.escalated_at is not None

    alert = service.advance_status(db, alert.id, ADMIN, AlertStatus.RESOLVED, alert.version)
    assert alert.status == AlertStatus.RESOLVED


def test_terminal_alerts_do_not_move(service, db):
    alert = dispatched_alert(service, db)
    alert = service.advance_status(db, alert.id, ADMIN, AlertStatus.REJECTED, alert.version)

    for target in AlertStatus:
        with pytest.raises(InvalidTransitionError):
            service.advance_status(db, alert.id, ADMIN, target, alert.version)


def test_admin_can_dispatch_early(service, db):
    alert = service.create_alert(db, REQUESTER, Category.MEDICAL, Urgency.HIGH, "", DELHI)
    alert = service.advance_status(db, alert.id, ADMIN, AlertStatus.DISPATCHED, alert.version)
    assert alert.status == AlertStatus.DISPATCHED


def test_unknown_alert(service, db):
    with pytest.raises(NotFoundError):
        service.advance_status(db, "missing", ADMIN, AlertStatus.DISPATCHED, 1)


def test_edge_table_has_no_way_back():
    for (frm, to) in EDGES:
        if frm in ORDER and to in ORDER:
            assert ORDER.index(to) > ORDER.index(frm)
    assert allowed_targets(AlertStatus.RESOLVED) == set()
    assert allowed_targets(AlertStatus.CANCELLED) == set()
    assert allowed_targets(AlertStatus.REJECTED) == set()


def test_listeners_see_committed_transitions(service, db):
    seen = []
    service.engine.add_listener(lambda t: seen.append((t.from_status, t.to_status, t.alert.version)))
    dispatched_alert(service, db)
    assert seen == [(None, AlertStatus.CREATED, 1), (AlertStatus.CREATED, AlertStatus.DISPATCHED, 2)]


def test_failing_listener_does_not_undo_transition(service, db):
    def boom(transition):
        raise RuntimeError("listener crashed")

    service.engine.add_listener(boom)
    alert = dispatched_alert(service, db)
    assert service.get_alert(db, alert.id, ADMIN).status == AlertStatus.DISPATCHED
