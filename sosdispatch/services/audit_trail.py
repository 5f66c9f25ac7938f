"""Append-only audit trail of alert transitions."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from sosdispatch.core.errors import TransientStorageError
from sosdispatch.models.audit_record import AuditRecord


class AuditTrail:
    """Records who moved an alert from which status to which, and when.

    There is no update or delete. ``append`` only adds the row
    to the caller's transaction, so the record commits atomically with the
    transition it describes.
    """

    def append(self, db: Session, record: AuditRecord) -> AuditRecord:
        try:
            db.add(record)
            db.flush()
        except OperationalError as exc:
            db.rollback()
            raise TransientStorageError(f"Could not append audit record: {exc}") from exc
        return record

    def list(self, db: Session, alert_id: str) -> list[AuditRecord]:
        """Records for an alert ordered by sequence."""
        stmt = select(AuditRecord).where(AuditRecord.alert_id == alert_id).order_by(AuditRecord.sequence)
        return list(db.execute(stmt).scalars().all())
