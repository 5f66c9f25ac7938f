"""Escalation sweep tests."""

import asyncio
import threading

from conftest import DELHI, dispatched_alert, make_responder
from sosdispatch.core.security import Principal
from sosdispatch.models.enums import AlertStatus, Category, Role, Urgency
from sosdispatch.services.dispatch_service import DispatchService


def test_high_urgency_alert_escalates_after_sla(service, db, clock, config):
    alert = dispatched_alert(service, db, urgency=Urgency.HIGH)

    clock.advance(config.sla_high_seconds)
    assert service.run_sweep().escalated == []

    clock.advance(1)
    report = service.run_sweep()

    assert report.escalated == [alert.id]
    stored = service.store.get(db, alert.id)
    assert stored.status == AlertStatus.ESCALATED
    assert stored.escalated_at == clock()
    last = service.audit.list(db, alert.id)[-1]
    assert (last.actor_role, last.reason) == (Role.SYSTEM.value, "sla_breach")


def test_sla_depends_on_urgency(service, db, clock, config):
    high = dispatched_alert(service, db, urgency=Urgency.HIGH)
    low = dispatched_alert(service, db, urgency=Urgency.LOW)

    clock.advance(config.sla_high_seconds + 1)
    report = service.run_sweep()

    assert report.escalated == [high.id]
    assert service.store.get(db, low.id).status == AlertStatus.DISPATCHED


def test_progress_resets_time_in_state(service, db, clock, config):
    responder = make_responder(service, db, "vol-1")
    alert = dispatched_alert(service, db)

    clock.advance(config.sla_high_seconds - 10)
    alert = service.claim_alert(db, alert.id, responder).alert
    clock.advance(20)

    assert service.run_sweep().escalated == []
    assert service.store.get(db, alert.id).status == AlertStatus.CLAIMED


def test_expired_window_is_promoted(service, db, clock, config):
    alert = service.create_alert(
        db, Principal("req-1", Role.USER), Category.FIRE, Urgency.MEDIUM, "Smoke from roof", DELHI
    )
    assert service.run_sweep().promoted == []

    clock.advance(config.cancel_window_seconds)
    report = service.run_sweep()

    assert report.promoted == [alert.id]
    stored = service.store.get(db, alert.id)
    assert stored.status == AlertStatus.DISPATCHED
    assert stored.version == 2


def test_unclaimed_alerts_rejected_when_configured(config, session_factory, gateway, clock, db):
    config.reject_after_seconds = 60.0
    service = DispatchService(config, session_factory, [gateway], clock=clock)
    try:
        alert = dispatched_alert(service, db, urgency=Urgency.LOW)
        clock.advance(61)
        report = service.run_sweep()

        assert report.rejected == [alert.id]
        assert report.escalated == []
        last = service.audit.list(db, alert.id)[-1]
        assert (last.to_status, last.reason) == (AlertStatus.REJECTED, "no_responder")
    finally:
        service.fanout.shutdown()


def test_terminal_alerts_are_left_alone(service, db, clock, config):
    alert = dispatched_alert(service, db)
    service.advance_status(db, alert.id, Principal("admin-1", Role.ADMIN), AlertStatus.REJECTED, alert.version)

    clock.advance(config.sla_low_seconds * 10)
    report = service.run_sweep()
    assert report.changed == 0


def test_concurrent_sweeps_escalate_once(service, session_factory, db, clock, config):
    alerts = [dispatched_alert(service, db) for _ in range(3)]
    clock.advance(config.sla_high_seconds + 1)

    reports = []
    barrier = threading.Barrier(4)

    def sweeper():
        barrier.wait()
        reports.append(service.run_sweep())

    threads = [threading.Thread(target=sweeper) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    escalated = [alert_id for r in reports for alert_id in r.escalated]
    assert sorted(escalated) == sorted(a.id for a in alerts)
    for alert in alerts:
        records = service.audit.list(db, alert.id)
        assert [r.to_status for r in records].count(AlertStatus.ESCALATED) == 1
        assert service.store.get(db, alert.id).version == 3


def test_escalation_notifies_admins(service, db, clock, config, gateway):
    dispatched_alert(service, db)
    clock.advance(config.sla_high_seconds + 1)
    service.run_sweep()
    service.fanout.drain(5)

    assert "topic:admins" in gateway.targets("ESCALATED")


def test_background_loop_starts_and_stops(config, session_factory, gateway, clock):
    config.escalation_sweep_interval_seconds = 0.01
    service = DispatchService(config, session_factory, [gateway], clock=clock)

    async def run():
        await service.start()
        assert service.monitor._task is not None
        await asyncio.sleep(0.05)
        await service.stop()
        assert service.monitor._task is None

    asyncio.run(run())


def test_zero_interval_does_not_start(service):
    async def run():
        await service.monitor.start()
        assert service.monitor._task is None

    asyncio.run(run())
