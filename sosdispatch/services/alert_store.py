"""Alert storage with optimistic-concurrency (versioned) writes."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from sosdispatch.core.errors import TransientStorageError
from sosdispatch.models.alert import Alert
from sosdispatch.models.enums import AlertStatus

logger = logging.getLogger(__name__)


class AlertStore:
    """Keyed Alert storage.

    Mutations go through ``compare_and_set``: a single conditional UPDATE
    that only matches the row if its version (and any extra predicates)
    still hold. It does not commit; the caller commits together with the
    audit record.
    """

    def insert(self, db: Session, alert: Alert) -> Alert:
        try:
            db.add(alert)
            db.flush()
        except OperationalError as exc:
            db.rollback()
            raise TransientStorageError(f"Could not insert alert: {exc}") from exc
        return alert

    def get(self, db: Session, alert_id: str) -> Alert | None:
        """Fresh read of an alert (bypasses stale identity-map state)."""
        try:
            stmt = select(Alert).where(Alert.id == alert_id).execution_options(populate_existing=True)
            return db.execute(stmt).scalar_one_or_none()
        except OperationalError as exc:
            db.rollback()
            raise TransientStorageError(f"Could not read alert {alert_id}: {exc}") from exc

    def compare_and_set(
        self,
        db: Session,
        alert_id: str,
        expected_version: int,
        values: dict[str, Any],
        expected_statuses: Iterable[AlertStatus] | None = None,
        require_unclaimed: bool = False,
        extra_conditions: Iterable[Any] = (),
    ) -> bool:
        """Atomically apply ``values`` and bump the version if the row still matches.

        Returns False when another writer got there first.
        """
        conditions = [Alert.id == alert_id, Alert.version == expected_version]
        if expected_statuses is not None:
            conditions.append(Alert.status.in_(list(expected_statuses)))
        if require_unclaimed:
            conditions.append(Alert.claimed_by.is_(None))
        conditions.extend(extra_conditions)

        stmt = (
            update(Alert)
            .where(*conditions)
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = db.execute(stmt)
        except OperationalError as exc:
            db.rollback()
            raise TransientStorageError(f"Conditional write on alert {alert_id} failed: {exc}") from exc
        matched = result.rowcount == 1
        if not matched:
            logger.debug("CAS miss on alert %s at version %s", alert_id, expected_version)
        return matched

    def list_in_statuses(self, db: Session, statuses: Iterable[AlertStatus]) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(Alert.status.in_(list(statuses)))
            .order_by(Alert.created_at, Alert.id)
            .execution_options(populate_existing=True)
        )
        return list(db.execute(stmt).scalars().all())

    def list_by_requester(self, db: Session, requester_id: str, limit: int = 20) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(Alert.requester_id == requester_id)
            .order_by(Alert.created_at.desc(), Alert.id.desc())
            .limit(limit)
        )
        return list(db.execute(stmt).scalars().all())

    def list_by_claimant(self, db: Session, responder_id: str, limit: int = 20) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(Alert.claimed_by == responder_id)
            .order_by(Alert.claimed_at.desc(), Alert.id.desc())
            .limit(limit)
        )
        return list(db.execute(stmt).scalars().all())

    def list_in_box(
        self,
        db: Session,
        min_lat: float,
        max_lat: float,
        min_lng: float | None,
        max_lng: float | None,
        statuses: Iterable[AlertStatus],
    ) -> list[Alert]:
        """Alerts inside a lat/lng bounding box (longitude bounds optional)."""
        conditions = [
            Alert.latitude >= min_lat,
            Alert.latitude <= max_lat,
            Alert.status.in_(list(statuses)),
        ]
        if min_lng is not None and max_lng is not None:
            conditions.extend([Alert.longitude >= min_lng, Alert.longitude <= max_lng])
        stmt = select(Alert).where(*conditions).execution_options(populate_existing=True)
        return list(db.execute(stmt).scalars().all())
