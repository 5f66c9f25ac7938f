"""Exactly-one claim arbitration."""

from __future__ import annotations

import enum
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator

from sqlalchemy.orm import Session

from sosdispatch.core.errors import (
    AlreadyClaimedError,
    ConflictError,
    NotEligibleError,
    TransientStorageError,
)
from sosdispatch.core.policies import RESPONDER_ROLES
from sosdispatch.core.retry import retry_transient
from sosdispatch.core.security import Principal
from sosdispatch.models.alert import Alert
from sosdispatch.models.enums import AlertStatus
from sosdispatch.models.responder import Responder
from sosdispatch.services.geo_service import eligibility_failure
from sosdispatch.services.lifecycle import LifecycleEngine

logger = logging.getLogger(__name__)


class ClaimOutcome(str, enum.Enum):
    OK = "OK"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class ClaimAttempt:
    """Result of one claim request. Not persisted; the audit trail records successes."""

    alert_id: str
    responder_id: str
    attempted_at: datetime
    outcome: ClaimOutcome
    alert: Alert | None = None
    reason: str | None = None


class _LockEntry:
    __slots__ = ("lock", "waiters")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.waiters = 0


class KeyedLock:
    """One mutex per key, created on demand and dropped when nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, _LockEntry())
            entry.waiters += 1
        try:
            if not entry.lock.acquire(timeout=timeout):
                raise TransientStorageError(f"Timed out waiting to arbitrate {key}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.waiters -= 1
                if entry.waiters == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class ClaimArbiter:
    """Grants an alert to exactly one responder.

    Claims for the same alert are serialized through a per-alert lock in
    this process. Across processes the conditional UPDATE (status is
    DISPATCHED, nobody has claimed it, version unchanged) is what decides.

    Eligibility is checked before availability. An alert that is no longer
    open (claimed, cancelled, escalated, closed) comes back as
    ALREADY_CLAIMED with the reason; nothing is raised to the caller.
    """

    def __init__(self, engine: LifecycleEngine, locks: KeyedLock | None = None) -> None:
        self.engine = engine
        self.locks = locks or KeyedLock()

    def claim(self, db: Session, alert_id: str, responder: Principal) -> ClaimAttempt:
        config = self.engine.config
        attempted_at = self.engine.clock()
        with self.locks.hold(alert_id, config.claim_timeout_seconds):
            try:
                alert = retry_transient(
                    lambda: self._claim_once(db, alert_id, responder),
                    config.storage_retry_attempts,
                    config.storage_retry_backoff_seconds,
                    what=f"claim alert {alert_id}",
                )
            except AlreadyClaimedError as exc:
                logger.info("Claim on %s by %s lost: %s", alert_id, responder.principal_id, exc.message)
                return ClaimAttempt(
                    alert_id=alert_id,
                    responder_id=responder.principal_id,
                    attempted_at=attempted_at,
                    outcome=ClaimOutcome.ALREADY_CLAIMED,
                    alert=self.engine.store.get(db, alert_id),
                    reason=exc.message,
                )
            except NotEligibleError as exc:
                logger.info("Claim on %s by %s refused: %s", alert_id, responder.principal_id, exc.message)
                return ClaimAttempt(
                    alert_id=alert_id,
                    responder_id=responder.principal_id,
                    attempted_at=attempted_at,
                    outcome=ClaimOutcome.NOT_ELIGIBLE,
                    alert=self.engine.store.get(db, alert_id),
                    reason=exc.message,
                )

        if alert is None:
            return ClaimAttempt(
                alert_id=alert_id,
                responder_id=responder.principal_id,
                attempted_at=attempted_at,
                outcome=ClaimOutcome.NOT_FOUND,
            )
        return ClaimAttempt(
            alert_id=alert_id,
            responder_id=responder.principal_id,
            attempted_at=attempted_at,
            outcome=ClaimOutcome.OK,
            alert=alert,
        )

    def _claim_once(self, db: Session, alert_id: str, responder: Principal) -> Alert | None:
        store = self.engine.store
        alert = store.get(db, alert_id)
        if alert is None:
            return None
        alert = self.engine.ensure_dispatched(db, alert)

        if responder.role not in RESPONDER_ROLES:
            raise NotEligibleError(f"Role {responder.role.value} cannot claim alerts")
        row = db.get(Responder, responder.principal_id, populate_existing=True)
        failure = eligibility_failure(row, alert, self.engine.config.default_service_radius_km)
        if failure is not None:
            raise NotEligibleError(failure)

        if alert.claimed_by is not None:
            raise AlreadyClaimedError(f"Alert already claimed by {alert.claimed_by}")
        if alert.status == AlertStatus.CREATED:
            raise NotEligibleError("Alert is still within its cancellation window")
        if alert.status != AlertStatus.DISPATCHED:
            raise AlreadyClaimedError(f"Alert is {alert.status.value} and can no longer be claimed")

        now = self.engine.clock()
        try:
            transition = self.engine.commit_transition(
                db,
                alert,
                responder,
                AlertStatus.CLAIMED,
                now,
                reason="claimed",
                expected_statuses=[AlertStatus.DISPATCHED],
                require_unclaimed=True,
            )
        except ConflictError:
            transition = None
        if transition is not None:
            return transition.alert

        current = store.get(db, alert_id)
        if current is not None and current.claimed_by is not None:
            raise AlreadyClaimedError(f"Alert already claimed by {current.claimed_by}")
        if current is not None and current.status != AlertStatus.DISPATCHED:
            raise AlreadyClaimedError(f"Alert became {current.status.value} before the claim landed")
        raise ConflictError(f"Alert {alert_id} changed during the claim")
