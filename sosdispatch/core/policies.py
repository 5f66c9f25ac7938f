"""Dispatch policy constants."""

from __future__ import annotations

from datetime import timedelta

from sosdispatch.core.config import Settings
from sosdispatch.models.enums import AlertStatus, Role, Urgency

# Statuses that never change again
TERMINAL_STATUSES = frozenset({AlertStatus.RESOLVED, AlertStatus.CANCELLED, AlertStatus.REJECTED})

# Statuses a requester may still cancel from
CANCELLABLE_STATUSES = frozenset({AlertStatus.CREATED, AlertStatus.DISPATCHED})

# Statuses the SLA sweep watches
SLA_WATCHED_STATUSES = frozenset(
    {AlertStatus.DISPATCHED, AlertStatus.CLAIMED, AlertStatus.EN_ROUTE, AlertStatus.ARRIVED}
)

# Roles allowed to claim alerts
RESPONDER_ROLES = frozenset({Role.VOLUNTEER, Role.EMPLOYEE, Role.ADMIN})

# Roles allowed to see and claim PRIVATE alerts
PRIVATE_ALERT_ROLES = frozenset({Role.EMPLOYEE, Role.ADMIN})

# Topic names used by the fan-out
ADMIN_TOPIC = "topic:admins"
RESPONDER_TOPIC = "topic:responders"


def region_topic(region_tag: str) -> str:
    """Topic for responders currently inside a region."""
    return f"topic:region:{region_tag}"


def sla_for(urgency: Urgency, config: Settings) -> timedelta:
    """Time-in-state allowed before an alert of this urgency is escalated."""
    seconds = {
        Urgency.HIGH: config.sla_high_seconds,
        Urgency.MEDIUM: config.sla_medium_seconds,
        Urgency.LOW: config.sla_low_seconds,
    }[urgency]
    return timedelta(seconds=seconds)
