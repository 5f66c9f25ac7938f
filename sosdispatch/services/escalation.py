"""Escalation monitor: dispatch promotion, SLA escalation and rejection sweeps."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from sosdispatch.core.errors import ConflictError, InvalidTransitionError, TransientStorageError
from sosdispatch.core.policies import SLA_WATCHED_STATUSES, sla_for
from sosdispatch.core.security import SYSTEM_PRINCIPAL
from sosdispatch.models.alert import Alert
from sosdispatch.models.enums import AlertStatus
from sosdispatch.services.lifecycle import LifecycleEngine

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one sweep changed. Alerts another writer moved first are counted as skipped."""

    started_at: datetime
    promoted: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    skipped: int = 0
    errors: int = 0

    @property
    def changed(self) -> int:
        return len(self.promoted) + len(self.rejected) + len(self.escalated)


class EscalationMonitor:
    """Periodically moves alerts the clock has made overdue.

    Every change goes through the version-checked ``advance``, so several
    sweeps (threads or processes) can run at once and each alert still
    moves only once.
    """

    def __init__(
        self,
        engine: LifecycleEngine,
        session_factory: Callable[[], Session],
    ) -> None:
        self.engine = engine
        self.session_factory = session_factory
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def sweep(self, db: Session | None = None) -> SweepReport:
        """Run one sweep. Opens its own session unless one is given."""
        if db is not None:
            return self._sweep(db)
        session = self.session_factory()
        try:
            return self._sweep(session)
        finally:
            session.close()

    def _sweep(self, db: Session) -> SweepReport:
        config = self.engine.config
        store = self.engine.store
        now = self.engine.clock()
        report = SweepReport(started_at=now)

        for alert in store.list_in_statuses(db, [AlertStatus.CREATED]):
            if now >= alert.cancel_window_expires_at:
                self._step(db, alert, AlertStatus.DISPATCHED, "cancel_window_expired", report, report.promoted)

        if config.reject_after_seconds > 0:
            reject_after = timedelta(seconds=config.reject_after_seconds)
            for alert in store.list_in_statuses(db, [AlertStatus.DISPATCHED]):
                if alert.claimed_by is None and now - alert.status_changed_at >= reject_after:
                    self._step(db, alert, AlertStatus.REJECTED, "no_responder", report, report.rejected)

        for alert in store.list_in_statuses(db, SLA_WATCHED_STATUSES):
            if now - alert.status_changed_at > sla_for(alert.urgency, config):
                self._step(db, alert, AlertStatus.ESCALATED, "sla_breach", report, report.escalated)

        if report.changed or report.errors:
            logger.info(
                "Sweep: promoted=%s rejected=%s escalated=%s skipped=%s errors=%s",
                len(report.promoted),
                len(report.rejected),
                len(report.escalated),
                report.skipped,
                report.errors,
            )
        return report

    def _step(
        self,
        db: Session,
        alert: Alert,
        target: AlertStatus,
        reason: str,
        report: SweepReport,
        bucket: list[str],
    ) -> None:
        try:
            self.engine.advance(db, alert.id, SYSTEM_PRINCIPAL, target, alert.version, reason=reason)
        except (ConflictError, InvalidTransitionError) as exc:
            logger.debug("Sweep skipped alert %s -> %s: %s", alert.id, target.value, exc.message)
            report.skipped += 1
        except TransientStorageError as exc:
            logger.warning("Sweep could not move alert %s -> %s: %s", alert.id, target.value, exc.message)
            report.errors += 1
        else:
            bucket.append(alert.id)

    # ---------- background task ----------

    async def start(self) -> None:
        """Start the periodic sweep (no-op when the interval is 0)."""
        interval = self.engine.config.escalation_sweep_interval_seconds
        if self._running or interval <= 0:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(interval))
        logger.info("Escalation monitor started (every %ss)", interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Escalation monitor stopped")

    async def _loop(self, interval: float) -> None:
        while self._running:
            try:
                await asyncio.to_thread(self.sweep)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in escalation sweep")
            await asyncio.sleep(interval)
