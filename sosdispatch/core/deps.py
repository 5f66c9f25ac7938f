"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from sosdispatch.core.errors import DispatchError
from sosdispatch.core.security import Principal, principal_from_token
from sosdispatch.models.enums import Role
from sosdispatch.services.dispatch_service import DispatchService

security = HTTPBearer(auto_error=False)


def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Principal:
    """Require an authenticated principal. Raises 401 if not authenticated."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    principal = principal_from_token(credentials.credentials)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def require_roles(*roles: Role):
    """Dependency factory: require the principal to hold one of ``roles``."""
    allowed = frozenset(roles)

    def dependency(principal: Annotated[Principal, Depends(get_current_principal)]) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(sorted(r.value for r in allowed))}",
            )
        return principal

    return dependency


def get_dispatch(request: Request) -> DispatchService:
    """The DispatchService built in the app lifespan."""
    return request.app.state.dispatch


def http_error(exc: DispatchError) -> HTTPException:
    """Translate a dispatch error into the HTTPException routers raise."""
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())
