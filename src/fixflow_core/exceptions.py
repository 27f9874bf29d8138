"""Error taxonomy for the request lifecycle.

Every error a caller can observe carries a stable ``ErrorCode`` so that UI
layers can branch on the code instead of parsing messages. Errors are
terminal for the calling operation and are never retried automatically.
"""
import enum
from typing import Optional, Sequence


class ErrorCode(str, enum.Enum):
    """Stable error codes surfaced to API clients."""

    NOT_FOUND = "NOT_FOUND"
    REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    UNAUTHORIZED = "UNAUTHORIZED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TECHNICIAN_NOT_FOUND = "TECHNICIAN_NOT_FOUND"
    TECHNICIAN_MISMATCH = "TECHNICIAN_MISMATCH"
    CANNOT_CREATE = "CANNOT_CREATE"
    CANNOT_ASSIGN = "CANNOT_ASSIGN"
    CANNOT_ACCEPT = "CANNOT_ACCEPT"
    CANNOT_REJECT = "CANNOT_REJECT"
    CANNOT_START = "CANNOT_START"
    CANNOT_HOLD = "CANNOT_HOLD"
    CANNOT_RESUME = "CANNOT_RESUME"
    CANNOT_COMPLETE = "CANNOT_COMPLETE"
    CANNOT_CANCEL = "CANNOT_CANCEL"
    CANNOT_UPDATE = "CANNOT_UPDATE"
    TRANSITION_CANCELLED = "TRANSITION_CANCELLED"
    SERVER_ERROR = "SERVER_ERROR"

    @classmethod
    def cannot(cls, action) -> "ErrorCode":
        """Return the CANNOT_<ACTION> code for a lifecycle action."""
        value = getattr(action, "value", action)
        return cls(f"CANNOT_{value.upper()}")


class LifecycleError(Exception):
    """Base class for errors raised by the lifecycle engine."""

    code: ErrorCode = ErrorCode.SERVER_ERROR
    http_status: int = 500

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    @property
    def public_code(self) -> ErrorCode:
        """Code shown to API clients (entity-specific not-found codes collapse to NOT_FOUND)."""
        if self.code == ErrorCode.REQUEST_NOT_FOUND:
            return ErrorCode.NOT_FOUND
        return self.code

    def to_dict(self) -> dict:
        return {"code": self.public_code.value, "message": self.message}


class NotFoundError(LifecycleError):
    """Entity does not exist or is not visible to the actor."""

    code = ErrorCode.NOT_FOUND
    http_status = 404


class RequestNotFoundError(NotFoundError):
    """Request does not exist or has been soft-deleted."""

    code = ErrorCode.REQUEST_NOT_FOUND
    http_status = 404

    def __init__(self, request_id):
        super().__init__(f"Request not found: {request_id}")
        self.request_id = request_id


class ForbiddenError(LifecycleError):
    """Actor is authenticated but not allowed to perform this action."""

    code = ErrorCode.FORBIDDEN
    http_status = 403


class UnauthorizedError(LifecycleError):
    """No usable actor identity was supplied."""

    code = ErrorCode.UNAUTHORIZED
    http_status = 401


class ValidationError(LifecycleError):
    """Action payload is missing a required field or references unknown data."""

    code = ErrorCode.VALIDATION_ERROR
    http_status = 400


class TechnicianNotFoundError(LifecycleError):
    """Technician does not exist or is not available for assignment."""

    code = ErrorCode.TECHNICIAN_NOT_FOUND
    http_status = 404

    def __init__(self, technician_id):
        super().__init__(f"Technician not found or unavailable: {technician_id}")
        self.technician_id = technician_id


class IllegalTransitionError(LifecycleError):
    """The request's current status does not permit the action.

    ``stale`` is True when the status changed between load and write
    (another actor won a concurrent transition). Callers may reload the
    request and decide again.
    """

    http_status = 400

    def __init__(
        self,
        action,
        current_status,
        allowed_from: Sequence = (),
        stale: bool = False,
        message: Optional[str] = None,
    ):
        if message is None:
            if stale:
                message = (
                    f"Cannot {action.value}: request was modified concurrently "
                    f"(status is now {current_status.value if current_status else 'unknown'})."
                )
            else:
                allowed_names = ", ".join(s.value for s in allowed_from) or "none"
                message = (
                    f"Cannot {action.value} a request in status '{current_status.value}'. "
                    f"Allowed from: {allowed_names}."
                )
        super().__init__(message, code=ErrorCode.cannot(action))
        self.action = action
        self.current_status = current_status
        self.allowed_from = list(allowed_from)
        self.stale = stale


class StaleStateError(Exception):
    """Raised by the repository when a compare-and-set finds a different status."""

    def __init__(self, request_id, expected_status, actual_status=None):
        super().__init__(
            f"Request {request_id} is no longer in status {expected_status.value}"
        )
        self.request_id = request_id
        self.expected_status = expected_status
        self.actual_status = actual_status


class TransitionCancelledError(LifecycleError):
    """Caller cancelled the operation before its transaction committed."""

    code = ErrorCode.TRANSITION_CANCELLED
    http_status = 409


class SequenceAllocationError(LifecycleError):
    """A request number could not be allocated after the configured number of attempts."""

    code = ErrorCode.SERVER_ERROR
    http_status = 500


class DispatchFailure(Exception):
    """A notification channel failed to deliver an event.

    Never propagated to the caller of a transition; the dispatcher logs it
    as a warning and records it in the dispatch result.
    """

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel
