"""JWT utilities for the identity provider boundary.

Tokens carry ``sub`` (principal id) and ``role``. The dispatch core trusts
the identity they assert but still performs its own role and eligibility
checks.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from sosdispatch.core.config import settings
from sosdispatch.models.enums import Role


@dataclass(frozen=True)
class Principal:
    """Authenticated caller: who they are and the role the identity provider granted."""

    principal_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# Actor used by the escalation monitor and automatic dispatch promotion
SYSTEM_PRINCIPAL = Principal(principal_id="system", role=Role.SYSTEM)


def create_access_token(subject: str, role: Role | str, extra: dict[str, Any] | None = None) -> str:
    """Create a JWT access token (used by tests and local tooling)."""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "sub": str(subject),
        "role": Role(role).value,
        "exp": expire,
        "iat": now,
    }
    if extra:
        payload.update(extra)
    return jwt.encode(
        payload,
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT. Returns payload or None if invalid."""
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None


def principal_from_token(token: str) -> Principal | None:
    """Build a Principal from a bearer token, or None if it is not acceptable."""
    payload = decode_access_token(token)
    if not payload or "sub" not in payload:
        return None
    try:
        role = Role(payload.get("role", Role.USER.value))
    except ValueError:
        return None
    if role == Role.SYSTEM:
        # Only the process itself acts as system
        return None
    return Principal(principal_id=str(payload["sub"]), role=role)
