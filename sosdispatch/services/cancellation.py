"""Self-service cancellation window."""

from __future__ import annotations

from datetime import datetime, timedelta

from sosdispatch.core.config import Settings
from sosdispatch.core.errors import TooLateError, ValidationError
from sosdispatch.core.policies import CANCELLABLE_STATUSES
from sosdispatch.core.security import Principal
from sosdispatch.models.alert import Alert


class CancellationWindow:
    """Decides whether a requester may still take an alert back.

    The server clock is authoritative. ``open_condition`` is added to the
    conditional UPDATE so the expiry is checked again at write time, not
    only when the alert was read.
    """

    def __init__(self, config: Settings) -> None:
        self._config = config

    def window_for(self, requested_seconds: float | None) -> timedelta:
        """Window length for a new alert; per-alert override must stay within bounds."""
        if requested_seconds is None:
            return timedelta(seconds=self._config.cancel_window_seconds)
        if requested_seconds < 0 or requested_seconds > self._config.max_cancel_window_seconds:
            raise ValidationError(
                f"cancel_window_seconds must be between 0 and {self._config.max_cancel_window_seconds:g}"
            )
        return timedelta(seconds=requested_seconds)

    def check(self, alert: Alert, actor: Principal, now: datetime) -> None:
        """Raise unless ``actor`` may cancel ``alert`` at ``now``."""
        if actor.principal_id != alert.requester_id:
            raise TooLateError("Only the requester can cancel an alert")
        if alert.status not in CANCELLABLE_STATUSES:
            raise TooLateError(f"Alert is already {alert.status.value}")
        if now >= alert.cancel_window_expires_at:
            raise TooLateError("Cancellation window has closed")

    @staticmethod
    def open_condition(now: datetime):
        """SQL predicate that holds only while the window is still open."""
        return Alert.cancel_window_expires_at > now
