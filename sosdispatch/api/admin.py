"""Admin operations."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from sosdispatch.core.deps import get_dispatch, http_error, require_roles
from sosdispatch.core.errors import DispatchError
from sosdispatch.core.security import Principal
from sosdispatch.db.session import get_db
from sosdispatch.models.enums import Role
from sosdispatch.schemas.sweep import SweepResponse
from sosdispatch.services.dispatch_service import DispatchService

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/sweep", response_model=SweepResponse)
def run_sweep(
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_roles(Role.ADMIN)),
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Run an escalation sweep now instead of waiting for the next tick."""
    try:
        return dispatch.run_sweep(db)
    except DispatchError as e:
        raise http_error(e)
