"""
Domain errors raised by the booking core.

Each error is an ``HTTPException`` so route handlers can let it propagate;
``code`` is a stable identifier returned alongside ``detail``.
"""
from fastapi import HTTPException, status


class AppointmentError(HTTPException):
    code = "appointment_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Appointment request failed"

    def __init__(self, detail: str = None):
        super().__init__(
            status_code=self.__class__.status_code,
            detail=detail or self.default_detail,
        )


class NotFound(AppointmentError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"


class NotAuthorized(AppointmentError):
    code = "not_authorized"
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not authorized"


class InvalidRequest(AppointmentError):
    code = "invalid_request"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"


class DoctorUnavailable(AppointmentError):
    code = "doctor_unavailable"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Doctor not available"


class SlotUnavailable(AppointmentError):
    code = "slot_unavailable"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Slot not available"


class DuplicateSlot(AppointmentError):
    code = "duplicate_slot"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Slot already exists"


class SlotHasBookings(AppointmentError):
    code = "slot_has_bookings"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Cannot delete slot with bookings"


class PaymentAuthorizationFailed(AppointmentError):
    code = "payment_authorization_failed"
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_detail = "Payment authorization failed"


class PaymentProcessingFailed(AppointmentError):
    code = "payment_processing_failed"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Payment provider request failed"


class AlreadyProcessed(AppointmentError):
    code = "already_processed"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Payment already processed"


class InvalidTransition(AppointmentError):
    code = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Appointment cannot move to the requested state"


class AlreadyRated(AppointmentError):
    code = "already_rated"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Already rated"


class OutsideVideoWindow(AppointmentError):
    code = "outside_video_window"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Video call only available 10 min before to 30 min after appointment time"
