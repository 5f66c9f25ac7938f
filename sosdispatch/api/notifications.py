"""In-app notification inbox API."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from sosdispatch.core.deps import get_current_principal, get_dispatch, http_error
from sosdispatch.core.errors import DispatchError
from sosdispatch.core.security import Principal
from sosdispatch.db.session import get_db
from sosdispatch.schemas.notification import NotificationResponse
from sosdispatch.services.dispatch_service import DispatchService

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationResponse])
def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Caller's inbox, newest first."""
    return dispatch.list_notifications(db, principal, unread_only=unread_only, limit=limit)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
def mark_read(
    notification_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatch: DispatchService = Depends(get_dispatch),
):
    try:
        return dispatch.mark_notification_read(db, principal, notification_id)
    except DispatchError as e:
        raise http_error(e)
