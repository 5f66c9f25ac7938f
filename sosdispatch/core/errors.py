"""Error taxonomy for dispatch operations.

Each error carries a stable ``code``, whether the caller may retry it, and
the HTTP status routers should answer with. Race losses (``AlreadyClaimedError``,
``TooLateError``) are expected outcomes: the service turns them into typed
results instead of letting them reach the caller as faults.
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch errors."""

    code = "dispatch_error"
    retryable = False
    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class ValidationError(DispatchError):
    """Malformed input, rejected at the boundary."""

    code = "validation_error"
    status_code = 422


class NotFoundError(DispatchError):
    code = "not_found"
    status_code = 404


class AlreadyClaimedError(DispatchError):
    """Lost the claim race: another responder owns the alert."""

    code = "already_claimed"
    status_code = 409


class TooLateError(DispatchError):
    """The cancellation window has passed or the alert is already handled."""

    code = "too_late"
    status_code = 409


class InvalidTransitionError(DispatchError):
    code = "invalid_transition"
    status_code = 409


class ConflictError(DispatchError):
    """Version mismatch. Reload the alert and retry."""

    code = "conflict"
    retryable = True
    status_code = 409


class NotEligibleError(DispatchError):
    """Role, duty or radius check failed."""

    code = "not_eligible"
    status_code = 403


class TransientStorageError(DispatchError):
    code = "transient_storage"
    retryable = True
    status_code = 503


class NotificationDeliveryFailure(DispatchError):
    """A gateway delivery exhausted its retries. Logged, never fatal."""

    code = "notification_delivery_failure"
    retryable = True
    status_code = 502
