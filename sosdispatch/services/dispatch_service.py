"""Dispatch service: the operation surface routers and the websocket layer call.

Built once in the app lifespan and kept on ``app.state.dispatch``. Every
operation takes the database session and the calling ``Principal``
explicitly.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sosdispatch.core.config import Settings
from sosdispatch.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotEligibleError,
    NotFoundError,
    TooLateError,
    ValidationError,
)
from sosdispatch.core.policies import (
    ADMIN_TOPIC,
    CANCELLABLE_STATUSES,
    PRIVATE_ALERT_ROLES,
    RESPONDER_ROLES,
    RESPONDER_TOPIC,
    region_topic,
)
from sosdispatch.core.security import Principal
from sosdispatch.core.ws_manager import ConnectionManager
from sosdispatch.models.alert import Alert
from sosdispatch.models.audit_record import AuditRecord
from sosdispatch.models.enums import AlertStatus, Category, NotificationKind, Urgency, Visibility
from sosdispatch.models.feedback import Feedback
from sosdispatch.models.notification import Notification
from sosdispatch.models.responder import Responder
from sosdispatch.models.safe_zone import SafeZone
from sosdispatch.schemas.alert import AlertResponse
from sosdispatch.services.alert_store import AlertStore
from sosdispatch.services.audit_trail import AuditTrail
from sosdispatch.services.cancellation import CancellationWindow
from sosdispatch.services.claim_arbiter import ClaimArbiter, ClaimAttempt
from sosdispatch.services.escalation import EscalationMonitor, SweepReport
from sosdispatch.services.fanout import NotificationFanout, PushGateway, Subscription
from sosdispatch.services.gateways import InboxGateway, WebSocketGateway
from sosdispatch.services.geo_service import (
    AlertFilters,
    Candidate,
    GeoPoint,
    GeospatialIndex,
    LocationUpdateResult,
    ProximityFilters,
)
from sosdispatch.services.lifecycle import LifecycleEngine, Transition, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_SERVICE_RADIUS_KM = 100.0


class CancelOutcome(str, enum.Enum):
    OK = "OK"
    TOO_LATE = "TOO_LATE"


@dataclass
class CancelResult:
    alert_id: str
    outcome: CancelOutcome
    alert: Alert
    reason: str | None = None


def notification_kind(transition: Transition) -> NotificationKind:
    if transition.from_status is None:
        return NotificationKind.CREATED
    return {
        AlertStatus.CLAIMED: NotificationKind.CLAIMED,
        AlertStatus.CANCELLED: NotificationKind.CANCELLED,
        AlertStatus.ESCALATED: NotificationKind.ESCALATED,
    }.get(transition.to_status, NotificationKind.STATUS_CHANGED)


def alert_payload(alert: Alert) -> dict:
    return AlertResponse.model_validate(alert).model_dump(mode="json")


def _validate_point(point: GeoPoint) -> None:
    if not (-90.0 <= point.latitude <= 90.0) or not (-180.0 <= point.longitude <= 180.0):
        raise ValidationError("Location is out of range")


def _validate_radius(radius_km: float) -> None:
    if radius_km < 0:
        raise ValidationError("radius_km must not be negative")


class DispatchService:
    def __init__(
        self,
        config: Settings,
        session_factory: Callable[[], Session],
        gateways: Iterable[PushGateway] = (),
        clock: Callable[[], datetime] = utcnow,
        ws_manager: ConnectionManager | None = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.clock = clock
        self.ws_manager = ws_manager

        self.store = AlertStore()
        self.audit = AuditTrail()
        self.window = CancellationWindow(config)
        self.geo = GeospatialIndex(config, self.store)
        self.engine = LifecycleEngine(self.store, self.audit, self.window, config, clock=clock)
        self.arbiter = ClaimArbiter(self.engine)
        self.fanout = NotificationFanout(gateways, config, clock=clock)
        self.monitor = EscalationMonitor(self.engine, session_factory)

        self.engine.add_listener(self._publish_transition)

    # ---------- lifecycle of the service itself ----------

    async def start(self) -> None:
        await self.monitor.start()

    async def stop(self) -> None:
        await self.monitor.stop()
        self.fanout.shutdown()

    # ---------- alerts ----------

    def create_alert(
        self,
        db: Session,
        requester: Principal,
        category: Category,
        urgency: Urgency,
        description: str,
        location: GeoPoint,
        visibility: Visibility = Visibility.PUBLIC,
        media_refs: list[str] | None = None,
        city: str | None = None,
        cancel_window_seconds: float | None = None,
    ) -> Alert:
        return self.engine.create(
            db,
            requester,
            category,
            urgency,
            description,
            location,
            visibility=visibility,
            media_refs=media_refs,
            city=city,
            cancel_window_seconds=cancel_window_seconds,
        )

    def cancel_alert(self, db: Session, alert_id: str, requester: Principal) -> CancelResult:
        """Requester takes the alert back while the window is open; TOO_LATE otherwise."""

        def attempt() -> CancelResult:
            alert = self._require_alert(db, alert_id)
            if requester.principal_id != alert.requester_id:
                return CancelResult(alert_id, CancelOutcome.TOO_LATE, alert, "Only the requester can cancel an alert")
            if alert.status not in CANCELLABLE_STATUSES:
                return CancelResult(alert_id, CancelOutcome.TOO_LATE, alert, f"Alert is already {alert.status.value}")
            try:
                transition = self.engine.advance(
                    db, alert_id, requester, AlertStatus.CANCELLED, alert.version, reason="requester_cancelled"
                )
            except (TooLateError, InvalidTransitionError) as exc:
                return CancelResult(alert_id, CancelOutcome.TOO_LATE, self._require_alert(db, alert_id), exc.message)
            return CancelResult(alert_id, CancelOutcome.OK, transition.alert)

        return self._retry_conflicts(attempt)

    def claim_alert(self, db: Session, alert_id: str, responder: Principal) -> ClaimAttempt:
        return self._retry_conflicts(lambda: self.arbiter.claim(db, alert_id, responder))

    def advance_status(
        self,
        db: Session,
        alert_id: str,
        actor: Principal,
        target_status: AlertStatus,
        expected_version: int,
    ) -> Alert:
        if target_status == AlertStatus.CLAIMED:
            raise InvalidTransitionError("Alerts are claimed through the claim endpoint")
        return self.engine.advance(db, alert_id, actor, target_status, expected_version).alert

    def get_alert(self, db: Session, alert_id: str, viewer: Principal) -> Alert:
        alert = self._require_alert(db, alert_id)
        if not self.can_view(alert, viewer):
            raise NotEligibleError("Private alerts are visible to staff, the requester and the claimant")
        return alert

    def can_view(self, alert: Alert, viewer: Principal) -> bool:
        if alert.visibility == Visibility.PUBLIC:
            return True
        return viewer.principal_id in (alert.requester_id, alert.claimed_by) or viewer.role in PRIVATE_ALERT_ROLES

    def list_nearby_alerts(
        self,
        db: Session,
        point: GeoPoint,
        radius_km: float,
        filters: AlertFilters | None = None,
        viewer: Principal | None = None,
    ) -> list[tuple[Alert, float]]:
        _validate_point(point)
        _validate_radius(radius_km)
        found = self.geo.alerts_near(db, point, radius_km, filters)
        if viewer is None:
            return found
        return [(alert, dist) for alert, dist in found if self.can_view(alert, viewer)]

    def list_my_alerts(self, db: Session, requester: Principal, limit: int = 20) -> list[Alert]:
        return self.store.list_by_requester(db, requester.principal_id, limit)

    def list_claimed_alerts(self, db: Session, responder: Principal, limit: int = 20) -> list[Alert]:
        return self.store.list_by_claimant(db, responder.principal_id, limit)

    def audit_trail(self, db: Session, alert_id: str, viewer: Principal) -> list[AuditRecord]:
        alert = self._require_alert(db, alert_id)
        if not viewer.is_admin and viewer.principal_id not in (alert.requester_id, alert.claimed_by):
            raise NotEligibleError("Only admins, the requester and the claimant can read the audit trail")
        return self.audit.list(db, alert_id)

    def subscribe_alert(self, alert_id: str, subscriber_id: str) -> Subscription:
        return self.fanout.subscribe(alert_id, subscriber_id)

    def unsubscribe_alert(self, subscription: Subscription) -> None:
        self.fanout.unsubscribe(subscription)

    def submit_feedback(
        self, db: Session, alert_id: str, requester: Principal, rating: int, comment: str | None = None
    ) -> Feedback:
        alert = self._require_alert(db, alert_id)
        if requester.principal_id != alert.requester_id:
            raise NotEligibleError("Only the requester can leave feedback")
        if alert.status != AlertStatus.RESOLVED:
            raise InvalidTransitionError("Feedback is accepted once the alert is resolved")
        if not 1 <= rating <= 5:
            raise ValidationError("rating must be between 1 and 5")
        feedback = Feedback(
            alert_id=alert_id,
            requester_id=requester.principal_id,
            rating=rating,
            comment=comment,
            created_at=self.clock(),
        )
        db.add(feedback)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise InvalidTransitionError("Feedback was already submitted for this alert") from exc
        db.refresh(feedback)
        return feedback

    def run_sweep(self, db: Session | None = None) -> SweepReport:
        return self.monitor.sweep(db)

    # ---------- responders ----------

    def update_responder(
        self,
        db: Session,
        principal: Principal,
        on_duty: bool | None = None,
        service_radius_km: float | None = None,
        preferred_categories: list[Category] | None = None,
    ) -> Responder:
        """Register or update the caller's duty status, radius and category preferences."""
        responder = self._get_or_create_responder(db, principal)
        if on_duty is not None and on_duty != responder.on_duty:
            responder.on_duty = on_duty
            responder.on_duty_since = self.clock() if on_duty else None
        if service_radius_km is not None:
            if not 0 < service_radius_km <= MAX_SERVICE_RADIUS_KM:
                raise ValidationError(f"service_radius_km must be in (0, {MAX_SERVICE_RADIUS_KM:g}]")
            responder.service_radius_km = service_radius_km
        if preferred_categories is not None:
            responder.preferred_categories = sorted({c.value for c in preferred_categories})
        db.commit()
        db.refresh(responder)
        self._sync_topics(responder)
        logger.info("Responder %s on_duty=%s radius=%skm", responder.id, responder.on_duty, responder.service_radius_km)
        return responder

    def update_location(self, db: Session, principal: Principal, point: GeoPoint) -> LocationUpdateResult:
        _validate_point(point)
        responder = self._get_or_create_responder(db, principal)
        result = self.geo.update_location(db, responder, point, self.clock())
        if result.accepted:
            self._sync_topics(result.responder)
        return result

    def get_responder(self, db: Session, principal_id: str) -> Responder | None:
        return db.get(Responder, principal_id)

    def nearby_responders(
        self, db: Session, point: GeoPoint, radius_km: float, viewer: Principal, category: Category | None = None
    ) -> list[Candidate]:
        if viewer.role not in PRIVATE_ALERT_ROLES:
            raise NotEligibleError("Only staff can look up responder positions")
        _validate_point(point)
        _validate_radius(radius_km)
        filters = ProximityFilters(kinds=frozenset({"responder"}), category=category)
        return self.geo.query(db, point, radius_km, filters)

    def topics_for(self, principal: Principal, responder: Responder | None) -> list[str]:
        """Websocket topics a principal listens on."""
        topics: list[str] = []
        if principal.is_admin:
            topics.append(ADMIN_TOPIC)
        if responder is not None and responder.on_duty and principal.role in RESPONDER_ROLES:
            topics.append(RESPONDER_TOPIC)
            if responder.region_tag:
                topics.append(region_topic(responder.region_tag))
        return topics

    # ---------- safe zones ----------

    def add_safe_zone(
        self,
        db: Session,
        admin: Principal,
        name: str,
        kind: str,
        location: GeoPoint,
        verified: bool = True,
    ) -> SafeZone:
        if not admin.is_admin:
            raise NotEligibleError("Only admins can add safe zones")
        _validate_point(location)
        zone = SafeZone(
            name=name.strip(),
            kind=kind.strip().lower(),
            latitude=location.latitude,
            longitude=location.longitude,
            verified=verified,
            created_at=self.clock(),
        )
        db.add(zone)
        db.commit()
        db.refresh(zone)
        return zone

    def nearby_safe_zones(self, db: Session, point: GeoPoint, radius_km: float, limit: int = 20) -> list[Candidate]:
        _validate_point(point)
        _validate_radius(radius_km)
        return self.geo.query(db, point, radius_km, ProximityFilters(kinds=frozenset({"safe_zone"})))[:limit]

    # ---------- inbox ----------

    def list_notifications(
        self, db: Session, principal: Principal, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        stmt = select(Notification).where(Notification.target_id == principal.principal_id)
        if unread_only:
            stmt = stmt.where(Notification.read_at.is_(None))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        return list(db.execute(stmt).scalars().all())

    def mark_notification_read(self, db: Session, principal: Principal, notification_id: int) -> Notification:
        notification = db.get(Notification, notification_id)
        if not notification or notification.target_id != principal.principal_id:
            raise NotFoundError("Notification not found")
        if notification.read_at is None:
            notification.read_at = self.clock()
            db.commit()
            db.refresh(notification)
        return notification

    # ---------- internals ----------

    def _require_alert(self, db: Session, alert_id: str) -> Alert:
        alert = self.store.get(db, alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    def _retry_conflicts(self, func: Callable[[], T]) -> T:
        attempts = max(self.config.conflict_retry_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return func()
            except ConflictError as exc:
                if attempt == attempts:
                    raise
                logger.debug("Conflict (attempt %s/%s), re-reading: %s", attempt, attempts, exc.message)
        raise AssertionError("unreachable")

    def _get_or_create_responder(self, db: Session, principal: Principal) -> Responder:
        if principal.role not in RESPONDER_ROLES:
            raise NotEligibleError(f"Role {principal.role.value} cannot act as a responder")
        responder = db.get(Responder, principal.principal_id)
        if responder is None:
            responder = Responder(
                id=principal.principal_id,
                role=principal.role,
                on_duty=False,
                service_radius_km=self.config.default_service_radius_km,
                preferred_categories=[],
            )
            db.add(responder)
        elif responder.role != principal.role:
            # The identity provider is the source of truth for roles
            responder.role = principal.role
        return responder

    def _sync_topics(self, responder: Responder) -> None:
        if self.ws_manager is None:
            return
        principal = Principal(principal_id=responder.id, role=responder.role)
        self.ws_manager.set_topics(responder.id, self.topics_for(principal, responder))

    def _targets_for(self, transition: Transition) -> list[str]:
        alert = transition.alert
        kind = notification_kind(transition)
        region = region_topic(alert.region_tag)
        targets: list[str] = [alert.requester_id]
        if kind == NotificationKind.CREATED:
            db = self.session_factory()
            try:
                targets.extend(c.id for c in self.geo.eligible_responders(db, alert))
            finally:
                db.close()
            targets.extend([region, ADMIN_TOPIC])
        elif kind in (NotificationKind.CLAIMED, NotificationKind.CANCELLED) or (
            transition.to_status == AlertStatus.REJECTED
        ):
            targets.extend([region, ADMIN_TOPIC])
        elif kind == NotificationKind.ESCALATED:
            targets.append(ADMIN_TOPIC)
        if alert.claimed_by:
            targets.append(alert.claimed_by)
        return targets

    def _publish_transition(self, transition: Transition) -> None:
        alert = transition.alert
        payload = alert_payload(alert)
        payload["from_status"] = transition.from_status.value if transition.from_status else None
        payload["reason"] = transition.reason
        self.fanout.publish(
            alert.id,
            notification_kind(transition),
            alert.version,
            payload,
            self._targets_for(transition),
        )


def build_dispatch_service(
    config: Settings,
    session_factory: Callable[[], Session],
    ws_manager: ConnectionManager,
) -> DispatchService:
    gateways: list[PushGateway] = [InboxGateway(session_factory), WebSocketGateway(ws_manager)]
    return DispatchService(config, session_factory, gateways, ws_manager=ws_manager)
