"""Alert lifecycle: state machine, versioned transitions and post-commit listeners."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from sosdispatch.core.config import Settings
from sosdispatch.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from sosdispatch.core.retry import retry_transient
from sosdispatch.core.security import SYSTEM_PRINCIPAL, Principal
from sosdispatch.models.alert import Alert
from sosdispatch.models.audit_record import AuditRecord
from sosdispatch.models.enums import AlertStatus, Category, Role, Urgency, Visibility
from sosdispatch.services.alert_store import AlertStore
from sosdispatch.services.audit_trail import AuditTrail
from sosdispatch.services.cancellation import CancellationWindow
from sosdispatch.services.geo_service import GeoPoint, derive_region_tag

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActorRelation(str, enum.Enum):
    """How a principal relates to a particular alert."""

    SYSTEM = "system"
    ADMIN = "admin"
    REQUESTER = "requester"
    CLAIMANT = "claimant"
    ARBITER = "arbiter"


S = AlertStatus
R = ActorRelation

# (from, to) -> relations allowed to take that edge
EDGES: dict[tuple[AlertStatus, AlertStatus], frozenset[ActorRelation]] = {
    (S.CREATED, S.DISPATCHED): frozenset({R.SYSTEM, R.ADMIN}),
    (S.CREATED, S.CANCELLED): frozenset({R.REQUESTER}),
    (S.DISPATCHED, S.CANCELLED): frozenset({R.REQUESTER}),
    (S.DISPATCHED, S.CLAIMED): frozenset({R.ARBITER}),
    (S.DISPATCHED, S.REJECTED): frozenset({R.SYSTEM, R.ADMIN}),
    (S.DISPATCHED, S.ESCALATED): frozenset({R.SYSTEM, R.ADMIN}),
    (S.CLAIMED, S.ESCALATED): frozenset({R.SYSTEM, R.ADMIN, R.CLAIMANT}),
    (S.EN_ROUTE, S.ESCALATED): frozenset({R.SYSTEM, R.ADMIN, R.CLAIMANT}),
    (S.ARRIVED, S.ESCALATED): frozenset({R.SYSTEM, R.ADMIN, R.CLAIMANT}),
    (S.CLAIMED, S.EN_ROUTE): frozenset({R.CLAIMANT, R.ADMIN}),
    (S.EN_ROUTE, S.ARRIVED): frozenset({R.CLAIMANT, R.ADMIN}),
    (S.ARRIVED, S.RESOLVED): frozenset({R.CLAIMANT, R.ADMIN}),
    (S.ESCALATED, S.RESOLVED): frozenset({R.ADMIN, R.CLAIMANT}),
}

del S, R


def allowed_targets(current: AlertStatus) -> set[AlertStatus]:
    return {to for (frm, to) in EDGES if frm == current}


def relations_of(alert: Alert, actor: Principal) -> set[ActorRelation]:
    relations: set[ActorRelation] = set()
    if actor.role == Role.SYSTEM:
        relations.add(ActorRelation.SYSTEM)
    if actor.is_admin:
        relations.add(ActorRelation.ADMIN)
    if actor.principal_id == alert.requester_id:
        relations.add(ActorRelation.REQUESTER)
    if alert.claimed_by is not None and actor.principal_id == alert.claimed_by:
        relations.add(ActorRelation.CLAIMANT)
    return relations


@dataclass
class Transition:
    """A committed status change, handed to post-commit listeners."""

    alert: Alert
    from_status: AlertStatus | None
    to_status: AlertStatus
    actor: Principal
    at: datetime
    reason: str | None = None


TransitionListener = Callable[[Transition], None]


class LifecycleEngine:
    """Validates and applies alert transitions.

    Every write is read-version, check, then a conditional UPDATE that
    expects that version. The audit record for the new version is written
    in the same transaction, so a transition and its record commit or fail
    together. Listeners run only after the commit.
    """

    def __init__(
        self,
        store: AlertStore,
        audit: AuditTrail,
        window: CancellationWindow,
        config: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.window = window
        self.config = config
        self.clock = clock
        self._listeners: list[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    # ---------- create ----------

    def create(
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
        """Persist a new CREATED alert at version 1 together with its first audit record."""
        if requester.role == Role.SYSTEM:
            raise ValidationError("Alerts must be raised by a person")
        description = (description or "").strip()
        if len(description) > self.config.max_description_length:
            raise ValidationError(f"Description exceeds {self.config.max_description_length} characters")
        if not (-90.0 <= location.latitude <= 90.0) or not (-180.0 <= location.longitude <= 180.0):
            raise ValidationError("Location is out of range")
        refs = list(media_refs or [])
        if len(refs) > self.config.max_media_refs:
            raise ValidationError(f"At most {self.config.max_media_refs} media references are allowed")
        window = self.window.window_for(cancel_window_seconds)

        def attempt() -> Alert:
            now = self.clock()
            alert = Alert(
                requester_id=requester.principal_id,
                category=category,
                urgency=urgency,
                description=description,
                latitude=location.latitude,
                longitude=location.longitude,
                region_tag=derive_region_tag(location, city),
                visibility=visibility,
                status=AlertStatus.CREATED,
                created_at=now,
                status_changed_at=now,
                cancel_window_expires_at=now + window,
                media_refs=refs,
                version=1,
            )
            self.store.insert(db, alert)
            self.audit.append(
                db,
                AuditRecord(
                    alert_id=alert.id,
                    sequence=1,
                    actor_id=requester.principal_id,
                    actor_role=requester.role.value,
                    from_status=None,
                    to_status=AlertStatus.CREATED,
                    timestamp=now,
                    reason="created",
                ),
            )
            self._commit(db, alert.id)
            return alert

        alert = retry_transient(
            attempt,
            self.config.storage_retry_attempts,
            self.config.storage_retry_backoff_seconds,
            what="create alert",
        )
        logger.info("Alert %s created by %s (%s/%s)", alert.id, requester.principal_id, category.value, urgency.value)
        self._emit(
            Transition(
                alert=alert,
                from_status=None,
                to_status=AlertStatus.CREATED,
                actor=requester,
                at=alert.created_at,
                reason="created",
            )
        )
        if window.total_seconds() == 0:
            alert = self.ensure_dispatched(db, alert)
        return alert

    # ---------- transitions ----------

    def advance(
        self,
        db: Session,
        alert_id: str,
        actor: Principal,
        target: AlertStatus,
        expected_version: int,
        reason: str | None = None,
    ) -> Transition:
        """Move an alert to ``target`` if the edge is allowed and the version still matches."""

        def attempt() -> Transition:
            alert = self.store.get(db, alert_id)
            if alert is None:
                raise NotFoundError(f"Alert {alert_id} not found")
            now = self.clock()
            self.check_edge(alert, actor, target)

            extra_conditions: list[Any] = []
            if target == AlertStatus.CANCELLED:
                self.window.check(alert, actor, now)
                extra_conditions.append(self.window.open_condition(now))

            if alert.version != expected_version:
                raise ConflictError(
                    f"Alert {alert_id} is at version {alert.version}, not {expected_version}"
                )
            transition = self.commit_transition(
                db, alert, actor, target, now, reason=reason, extra_conditions=extra_conditions
            )
            if transition is None:
                raise ConflictError(f"Alert {alert_id} changed while moving to {target.value}")
            return transition

        return retry_transient(
            attempt,
            self.config.storage_retry_attempts,
            self.config.storage_retry_backoff_seconds,
            what=f"advance alert {alert_id}",
        )

    def check_edge(self, alert: Alert, actor: Principal, target: AlertStatus) -> None:
        """Raise ``InvalidTransitionError`` unless ``actor`` may take alert to ``target``."""
        allowed = EDGES.get((alert.status, target))
        if allowed is None:
            raise InvalidTransitionError(f"Cannot move alert from {alert.status.value} to {target.value}")
        if allowed == {ActorRelation.ARBITER}:
            raise InvalidTransitionError("Alerts are claimed through the claim endpoint")
        if not allowed & relations_of(alert, actor):
            raise InvalidTransitionError(
                f"{actor.role.value} {actor.principal_id} may not move alert from "
                f"{alert.status.value} to {target.value}"
            )

    def commit_transition(
        self,
        db: Session,
        alert: Alert,
        actor: Principal,
        target: AlertStatus,
        now: datetime,
        reason: str | None = None,
        extra_values: dict[str, Any] | None = None,
        expected_statuses: Iterable[AlertStatus] | None = None,
        require_unclaimed: bool = False,
        extra_conditions: Iterable[Any] = (),
    ) -> Transition | None:
        """Conditional write plus audit record in one transaction.

        Returns None (after rolling back) when the row no longer matches the
        version or predicates it was read with.
        """
        from_status = alert.status
        values: dict[str, Any] = {"status": target, "status_changed_at": now}
        if target == AlertStatus.CLAIMED:
            values["claimed_by"] = actor.principal_id
            values["claimed_at"] = now
        elif target == AlertStatus.ESCALATED:
            values["escalated_at"] = now
        elif target == AlertStatus.RESOLVED:
            values["resolved_at"] = now
        if extra_values:
            values.update(extra_values)

        matched = self.store.compare_and_set(
            db,
            alert.id,
            alert.version,
            values,
            expected_statuses=expected_statuses if expected_statuses is not None else [from_status],
            require_unclaimed=require_unclaimed,
            extra_conditions=extra_conditions,
        )
        if not matched:
            db.rollback()
            return None

        try:
            self.audit.append(
                db,
                AuditRecord(
                    alert_id=alert.id,
                    sequence=alert.version + 1,
                    actor_id=actor.principal_id,
                    actor_role=actor.role.value,
                    from_status=from_status,
                    to_status=target,
                    timestamp=now,
                    reason=reason,
                ),
            )
        except IntegrityError:
            # Another writer already recorded this version
            db.rollback()
            return None
        self._commit(db, alert.id)

        fresh = self.store.get(db, alert.id)
        logger.info(
            "Alert %s %s -> %s by %s %s (v%s)",
            alert.id,
            from_status.value,
            target.value,
            actor.role.value,
            actor.principal_id,
            fresh.version,
        )
        transition = Transition(
            alert=fresh, from_status=from_status, to_status=target, actor=actor, at=now, reason=reason
        )
        self._emit(transition)
        return transition

    def ensure_dispatched(self, db: Session, alert: Alert) -> Alert:
        """Promote a CREATED alert whose cancellation window has closed.

        Safe to race: the loser simply re-reads the promoted row.
        """
        now = self.clock()
        if alert.status != AlertStatus.CREATED or now < alert.cancel_window_expires_at:
            return alert
        transition = self.commit_transition(
            db,
            alert,
            SYSTEM_PRINCIPAL,
            AlertStatus.DISPATCHED,
            now,
            reason="cancel_window_expired",
            extra_conditions=[Alert.cancel_window_expires_at <= now],
        )
        if transition is not None:
            return transition.alert
        return self.store.get(db, alert.id) or alert

    # ---------- internals ----------

    def _commit(self, db: Session, alert_id: str) -> None:
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError(f"Concurrent write on alert {alert_id}") from exc
        except OperationalError as exc:
            db.rollback()
            raise TransientStorageError(f"Commit for alert {alert_id} failed: {exc}") from exc

    def _emit(self, transition: Transition) -> None:
        for listener in self._listeners:
            try:
                listener(transition)
            except Exception:
                # The transition is committed; a listener must not undo it
                logger.exception("Transition listener failed for alert %s", transition.alert.id)
