"""Exception hierarchy for the dispatch core.

Every error a driver or customer can run into carries a ``user_message``
and a ``next_step`` so the presentation layer always has something to show
and an action to offer.
"""

from typing import Any


class DispatchError(Exception):
    """Base class for all dispatch errors."""

    code = "dispatch_error"
    user_message = "Something went wrong. Please try again."
    next_step = "retry"

    def __init__(self, detail: str | None = None, **context: Any):
        self.detail = detail or self.user_message
        self.context = context
        super().__init__(self.detail)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {
            "error": self.code,
            "message": self.user_message,
            "detail": self.detail,
            "next_step": self.next_step,
        }


# Store level


class StoreError(DispatchError):
    """Raised when a backing store read or write fails."""

    code = "store_error"
    user_message = "Connection issue. Please check your internet connection."


class PreconditionFailedError(StoreError):
    """Raised when a conditional write finds unexpected current values."""

    code = "precondition_failed"
    user_message = "This record changed while you were working on it."
    next_step = "refresh"


class PresenceError(DispatchError):
    """Raised when the presence channel rejects a publish."""

    code = "presence_error"
    user_message = "Live location could not be shared."


# Requests


class RequestNotFoundError(DispatchError):
    """Raised when a delivery request cannot be found."""

    code = "request_not_found"
    user_message = "Delivery request not found."
    next_step = "dismiss"


class RequestUnavailableError(DispatchError):
    """Raised when a request was taken by another driver or is no longer searching."""

    code = "request_unavailable"
    user_message = "This request is no longer available."
    next_step = "dismiss"


class InvalidTransitionError(DispatchError):
    """Raised when a request is not in a state that allows the operation."""

    code = "invalid_transition"
    user_message = "This delivery cannot be updated right now."
    next_step = "refresh"


class MalformedRequestError(DispatchError):
    """Raised when a stored request lacks the fields its stage requires."""

    code = "malformed_request"
    user_message = "This delivery record is incomplete."
    next_step = "contact_support"


class InvalidCancellationReasonError(DispatchError):
    """Raised when a cancellation reason is outside the fixed taxonomy."""

    code = "invalid_cancellation_reason"
    user_message = "Please choose a cancellation reason from the list."
    next_step = "choose_reason"


# Collection and completion


class PinFormatError(DispatchError):
    """Raised when an entered PIN is not exactly four digits."""

    code = "pin_format"
    user_message = "PIN must be 4 digits."
    next_step = "reenter_pin"


class PinMismatchError(DispatchError):
    """Raised when an entered PIN does not match the stored one."""

    code = "pin_mismatch"
    user_message = "The PIN you entered is incorrect. Please check with the customer and try again."
    next_step = "reenter_pin"

    def __init__(self, detail: str | None = None, attempts_remaining: int | None = None, **context: Any):
        super().__init__(detail, **context)
        self.attempts_remaining = attempts_remaining

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["attempts_remaining"] = self.attempts_remaining
        return data


class PinAttemptsExceededError(DispatchError):
    """Raised when the configured PIN attempt limit has been used up."""

    code = "pin_attempts_exceeded"
    user_message = "Too many incorrect PIN attempts."
    next_step = "contact_support"


class ProofRequiredError(DispatchError):
    """Raised when completing a delivery without a proof photo."""

    code = "proof_required"
    user_message = "Please take a photo of the delivered package."
    next_step = "capture_proof"


class RatingError(DispatchError):
    """Raised when a rating is out of range, early, or repeated."""

    code = "rating_error"
    user_message = "Rating could not be saved."
    next_step = "dismiss"


# Drivers


class DriverNotFoundError(DispatchError):
    """Raised when a driver profile cannot be found."""

    code = "driver_not_found"
    user_message = "Driver profile not found."
    next_step = "contact_support"


class DriverNotApprovedError(DispatchError):
    """Raised when a driver who is not approved tries to go online."""

    code = "driver_not_approved"
    user_message = "Your account is waiting for approval."
    next_step = "contact_support"


class DriverBusyError(DispatchError):
    """Raised when a driver already holds an active ride."""

    code = "driver_busy"
    user_message = "Finish your current delivery before accepting another."
    next_step = "open_current_delivery"


class PermissionDeniedError(DispatchError):
    """Raised when a device permission required for the flow is refused."""

    code = "permission_denied"
    user_message = "Permission required. Please allow access in your device settings."
    next_step = "grant_permission"

    def __init__(self, permission: str, detail: str | None = None, **context: Any):
        super().__init__(detail or f"{permission} permission not granted", **context)
        self.permission = permission

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["permission"] = self.permission
        return data


class DocumentNotFoundError(StoreError):
    """Raised when a write targets a document that does not exist."""

    code = "document_not_found"
    user_message = "Record not found."
    next_step = "refresh"
