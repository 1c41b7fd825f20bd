from dataclasses import dataclass
from typing import Optional

from ..core.security import UserRole
from ..models.appointment import Appointment, CancelledBy


@dataclass(frozen=True)
class Actor:
    """Who is acting on an appointment; ``doctor_id`` is set for doctor accounts."""
    user_id: Optional[int]
    role: UserRole
    doctor_id: Optional[int] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role=UserRole.ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def is_patient_of(self, appointment: Appointment) -> bool:
        return self.user_id is not None and appointment.patient_id == self.user_id

    def is_doctor_of(self, appointment: Appointment) -> bool:
        return self.doctor_id is not None and appointment.doctor_id == self.doctor_id

    def party(self, appointment: Appointment) -> Optional[CancelledBy]:
        """The actor's standing on the appointment, or None for outsiders."""
        if self.is_patient_of(appointment):
            return CancelledBy.PATIENT
        if self.is_doctor_of(appointment):
            return CancelledBy.DOCTOR
        if self.is_admin:
            return CancelledBy.SYSTEM if self.user_id is None else CancelledBy.ADMIN
        return None
