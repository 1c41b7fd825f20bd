from .user import User
from .doctor import Doctor
from .slot import Slot, SlotLease
from .appointment import (
    Appointment, AppointmentStatus, AppointmentType, CancelledBy, PaymentStatus,
)
from .prescription import Prescription
from .notification import Notification

__all__ = [
    "User", "Doctor", "Slot", "SlotLease", "Appointment", "AppointmentStatus", "AppointmentType",
    "CancelledBy", "PaymentStatus", "Prescription", "Notification",
]
