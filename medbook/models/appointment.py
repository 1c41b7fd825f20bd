from sqlalchemy import (
    Column, Integer, String, ForeignKey, DateTime, Date, Text, Numeric, JSON,
    CheckConstraint, Enum as SQLEnum,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

def _values(enum_cls):
    return [member.value for member in enum_cls]

class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"

class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    HELD = "held"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    VOIDED = "voided"
    FAILED = "failed"

class AppointmentType(str, enum.Enum):
    IN_PERSON = "in-person"
    VIDEO = "video"

class CancelledBy(str, enum.Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    SYSTEM = "system"

TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint("rating_score IS NULL OR (rating_score >= 1 AND rating_score <= 5)", name="ck_appointment_rating_range"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Relationships
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    slot_id = Column(Integer, ForeignKey("slots.id", ondelete="SET NULL"), nullable=True)

    # Copied from the slot at booking time
    date = Column(Date, nullable=False, index=True)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)

    # Appointment details
    type = Column(SQLEnum(AppointmentType, values_callable=_values), nullable=False, default=AppointmentType.IN_PERSON)
    status = Column(SQLEnum(AppointmentStatus, values_callable=_values), nullable=False, default=AppointmentStatus.PENDING, index=True)
    reason = Column(String(500), nullable=True)
    symptoms = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)

    # Payment
    payment_status = Column(SQLEnum(PaymentStatus, values_callable=_values), nullable=False, default=PaymentStatus.PENDING)
    payment_amount = Column(Numeric(10, 2), nullable=False)
    payment_currency = Column(String(3), nullable=False, default="usd")
    payment_reference = Column(String(255), nullable=True, index=True)
    paid_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    # Video session
    video_room_name = Column(String(255), nullable=True)
    video_room_url = Column(String(500), nullable=True)
    video_started_at = Column(DateTime, nullable=True)
    video_ended_at = Column(DateTime, nullable=True)
    video_duration = Column(Integer, nullable=True)

    # Rating
    rating_score = Column(Integer, nullable=True)
    rating_review = Column(Text, nullable=True)
    rated_at = Column(DateTime, nullable=True)

    # Cancellation
    cancelled_by = Column(SQLEnum(CancelledBy, values_callable=_values), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Back-reference to the attached prescription document
    prescription_id = Column(Integer, nullable=True)

    # Tracking
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("Doctor", back_populates="appointments")
    slot = relationship("Slot")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Appointment(id={self.id}, patient_id={self.patient_id}, doctor_id={self.doctor_id}, status='{self.status}')>"
